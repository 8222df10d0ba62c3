"""
Backend that hands classification to an external command, typically a local
LLM runner. The prompt is written to the command's stdin and the first JSON
object on stdout is taken as the answer.
"""
import json
import re
import shlex
import subprocess
import time
from typing import Any, Dict, Optional

from .backends import BackendResult
from .errors import BackendError
from .models import FIELD_NAMES, ClassifierStage
from .nlp_rules import normalize_status

RELEVANCE_PROMPT = """Classify this email as job-related or not.
Job-related: applications, interviews, recruiting, offers, rejections.
Output only: {"is_job": true, "confidence": 0.0-1.0} or {"is_job": false, "confidence": 0.0-1.0}"""

EXTRACTION_PROMPT = """Extract job details from this email.

Examples:
- "Thank you for applying to Google for Software Engineer" -> {"company": "Google", "position": "Software Engineer", "status": "Applied"}
- "Interview scheduled for Data Analyst role at Meta" -> {"company": "Meta", "position": "Data Analyst", "status": "Interview"}
- "Unfortunately, we won't be moving forward" -> {"company": null, "position": null, "status": "Rejected"}

Use the real company name, not the applicant tracking system.
Output JSON only with keys company, position, status, location, remote_status, salary_range.
status is one of Applied, Interview, Offer, Rejected. Use null for unknown fields."""

_decoder = json.JSONDecoder()


def first_json_object(output: str) -> Dict[str, Any]:
    text = output or ""
    for m in re.finditer(r"\{", text):
        try:
            value, _ = _decoder.raw_decode(text, m.start())
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    raise BackendError(f"No JSON object in model output: {(output or '')[:200]!r}")


class LLMCommandBackend:
    stages = frozenset([ClassifierStage.RELEVANCE, ClassifierStage.EXTRACTION])

    def __init__(self, command: str, timeout: float = 60.0, model_id: Optional[str] = None):
        if not command:
            raise BackendError("llm_command backend needs a command")
        self.argv = shlex.split(command)
        self.timeout = timeout
        self.name = model_id or f"llm:{self.argv[0].rsplit('/', 1)[-1]}"

    def _run(self, prompt: str) -> str:
        try:
            proc = subprocess.run(
                self.argv,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise BackendError(f"{self.name} timed out after {self.timeout}s") from e
        except OSError as e:
            raise BackendError(f"{self.name} could not start: {e}") from e
        if proc.returncode != 0:
            raise BackendError(f"{self.name} exited {proc.returncode}: {proc.stderr.strip()[:200]}")
        return proc.stdout

    def invoke(self, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        start = time.monotonic()
        prompt = RELEVANCE_PROMPT if stage == ClassifierStage.RELEVANCE else EXTRACTION_PROMPT
        raw = self._run(f"{prompt}\n\n{text}\n")
        parsed = first_json_object(raw)

        if stage == ClassifierStage.RELEVANCE:
            if "is_job" not in parsed:
                raise BackendError(f"{self.name} answer lacks is_job: {parsed}")
            confidence = parsed.get("confidence")
            try:
                confidence = float(confidence) if confidence is not None else None
            except (TypeError, ValueError):
                confidence = None
            return BackendResult(
                fields={"is_job_related": parsed["is_job"] is True},
                confidence=confidence,
                raw_response=raw.strip(),
                duration=time.monotonic() - start,
            )

        fields = {name: parsed.get(name) or None for name in FIELD_NAMES}
        fields["status"] = normalize_status(fields["status"])
        return BackendResult(fields=fields, raw_response=raw.strip(), duration=time.monotonic() - start)
