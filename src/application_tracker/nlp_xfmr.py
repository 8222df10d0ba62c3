from __future__ import annotations
import re
import time
from typing import Dict, Any, List, Optional

from transformers import pipeline
from sentence_transformers import SentenceTransformer, util

from .backends import BackendResult, split_text
from .errors import BackendError
from .models import ClassifierStage, ExtractedFields
from .nlp_rules import clean_position, extract_remote_status, extract_salary, normalize_status

RELEVANCE_LABELS = ["job application or recruiting email", "newsletter, marketing or personal email"]
STATUS_LABELS = ["Applied", "Interview", "Rejected", "Offer", "Other"]
ROLE_PROBES = ["software engineer", "data scientist", "machine learning engineer",
               "product manager", "research intern", "security engineer"]


def _clean(s: str) -> str:
    s = re.sub(r"[\u200B-\u200D\uFEFF]", "", s or "")
    s = re.sub(r"[ \t]+", " ", s)
    return s.strip()


def _texts(subject: str, body: str) -> str:
    return _clean(subject) + "\n\n" + _clean(body)


def _candidate_role_phrases(subject: str, body: str) -> List[str]:
    txt = _texts(subject, body)
    cands = set()
    for m in re.finditer(r"([A-Za-z/ &\-]{3,80}?\b(?:engineer|developer|analyst|scientist|manager|designer|internship|intern)\b)", txt, flags=re.I):
        phrase = re.sub(r"\s+", " ", m.group(1).strip(" -—|:").lower())
        # keep the tail; the lazy match can still swallow a leading clause
        cands.add(" ".join(phrase.split()[-4:]))
    for m in re.finditer(r"for the ([A-Za-z0-9/ &\-]{3,80}?) (?:position|role)", txt, flags=re.I):
        cands.add(m.group(1).strip(" -—|:").lower())
    return sorted(cands)[:20]


class TransformerBackend:
    """Zero-shot relevance and status, NER for company and location, embeddings for role."""

    name = "transformer"
    stages = frozenset([ClassifierStage.RELEVANCE, ClassifierStage.EXTRACTION])

    def __init__(
        self,
        zero_shot_model: str = "facebook/bart-large-mnli",
        ner_model: str = "dslim/bert-base-NER",
        embed_model: str = "sentence-transformers/all-MiniLM-L6-v2",
        status_labels: Optional[List[str]] = None,
        role_probe_phrases: Optional[List[str]] = None,
    ):
        self.zs = pipeline("zero-shot-classification", model=zero_shot_model)
        self.ner = pipeline("ner", model=ner_model, aggregation_strategy="simple")
        self.emb = SentenceTransformer(embed_model)
        self.status_labels = status_labels or STATUS_LABELS
        self.probes = role_probe_phrases or ROLE_PROBES
        self.name = f"transformer:{zero_shot_model.split('/')[-1]}"

    def _first_entity(self, text: str, group: str) -> Optional[str]:
        for ent in self.ner(_clean(text)) or []:
            if ent.get("entity_group") == group:
                return ent["word"].strip(" -—|:")
        return None

    def extract_company(self, subject: str, body: str) -> Optional[str]:
        return self._first_entity(subject, "ORG") or self._first_entity(body[:4000], "ORG")

    def extract_role(self, subject: str, body: str) -> Optional[str]:
        cands = _candidate_role_phrases(subject, body)
        if not cands:
            return None
        emb_cands = self.emb.encode(cands, convert_to_tensor=True, normalize_embeddings=True)
        emb_probe = self.emb.encode(self.probes, convert_to_tensor=True, normalize_embeddings=True)
        sim = util.cos_sim(emb_cands, emb_probe).max(dim=1).values
        best = cands[int(sim.argmax().item())]
        best = re.sub(r"\bml\b", "ML", best.title(), flags=re.I)
        best = re.sub(r"\bai\b", "AI", best, flags=re.I)
        return clean_position(best)

    def classify_status(self, subject: str, body: str) -> Optional[str]:
        label = self.zs(_texts(subject, body), self.status_labels, multi_label=False)["labels"][0]
        return normalize_status(label)

    def invoke(self, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        if stage not in self.stages:
            raise BackendError(f"{self.name} backend does not support {stage}")
        start = time.monotonic()
        subject, body = split_text(text)
        subject = metadata.get("subject", subject)
        body = metadata.get("body", body)

        if stage == ClassifierStage.RELEVANCE:
            out = self.zs(_texts(subject, body[:2000]), RELEVANCE_LABELS, multi_label=False)
            top, score = out["labels"][0], float(out["scores"][0])
            return BackendResult(
                fields={"is_job_related": top == RELEVANCE_LABELS[0]},
                confidence=round(score, 4),
                raw_response=f"{top}={score:.4f}",
                duration=time.monotonic() - start,
            )

        fields = ExtractedFields(
            company=self.extract_company(subject, body),
            position=self.extract_role(subject, body),
            status=self.classify_status(subject, body),
            location=self._first_entity(body[:2000], "LOC"),
            remote_status=extract_remote_status(subject, body),
            salary_range=extract_salary(body),
        )
        return BackendResult(
            fields=fields.as_dict(),
            raw_response=str(fields.as_dict()),
            duration=time.monotonic() - start,
        )
