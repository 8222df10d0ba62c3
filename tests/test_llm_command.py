import shlex
import sys

import pytest

from application_tracker.errors import BackendError
from application_tracker.llm_command import LLMCommandBackend, first_json_object
from application_tracker.models import ClassifierStage


def _command(tmp_path, output, exit_code=0, sleep=0):
    script = tmp_path / "fake_llm.py"
    script.write_text(
        "import sys, time\n"
        "sys.stdin.read()\n"
        f"time.sleep({sleep})\n"
        f"sys.stdout.write({output!r})\n"
        f"sys.exit({exit_code})\n",
        encoding="utf-8",
    )
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def test_first_json_object():
    assert first_json_object('thinking... {"is_job": true} done') == {"is_job": True}
    assert first_json_object('{bad} {"a": 1}') == {"a": 1}
    with pytest.raises(BackendError):
        first_json_object("no json here")


def test_relevance(tmp_path):
    backend = LLMCommandBackend(_command(tmp_path, 'Answer: {"is_job": true, "confidence": 0.85}'), model_id="llama3")
    result = backend.invoke(ClassifierStage.RELEVANCE, "Subject: Interview\nBody: hi", {})
    assert backend.name == "llama3"
    assert result.fields == {"is_job_related": True}
    assert result.confidence == pytest.approx(0.85)


def test_extraction_normalizes(tmp_path):
    out = '{"company": "Acme", "position": "Data Analyst", "status": "Declined", "location": ""}'
    backend = LLMCommandBackend(_command(tmp_path, out))
    result = backend.invoke(ClassifierStage.EXTRACTION, "Subject: x\nBody: y", {})
    assert result.fields["company"] == "Acme"
    assert result.fields["status"] == "Rejected"
    assert result.fields["location"] is None
    assert set(result.fields) == {"company", "position", "status", "location", "remote_status", "salary_range"}


def test_failures_raise(tmp_path):
    with pytest.raises(BackendError):
        LLMCommandBackend(_command(tmp_path, "oops", exit_code=3)).invoke(ClassifierStage.RELEVANCE, "", {})
    with pytest.raises(BackendError):
        LLMCommandBackend(_command(tmp_path, '{"label": 1}')).invoke(ClassifierStage.RELEVANCE, "", {})
    with pytest.raises(BackendError):
        LLMCommandBackend(_command(tmp_path, "{}", sleep=2), timeout=0.2).invoke(ClassifierStage.RELEVANCE, "", {})
    with pytest.raises(BackendError):
        LLMCommandBackend("")
