import re
import time
from typing import Any, Dict, List, Optional

import spacy
from spacy.language import Language

from .backends import BackendResult, split_text
from .errors import BackendError
from .models import ClassifierStage, ExtractedFields
from .nlp_rules import (
    classify_status,
    clean_position,
    extract_company,
    extract_remote_status,
    extract_salary,
)

ROLE_HEADS = ["engineer", "developer", "analyst", "scientist", "manager", "designer",
              "intern", "internship", "consultant", "specialist", "architect", "researcher"]

DEFAULT_ROLE_SYNONYMS = ["software", "data", "backend", "frontend", "full stack", "machine learning",
                         "ml", "ai", "product", "security", "devops", "platform", "research"]


def build_spacy(model_name: str, role_synonyms: List[str]) -> Language:
    nlp = spacy.load(model_name)
    # Add an EntityRuler to detect ROLE phrases like "senior backend engineer"
    if "entity_ruler" not in nlp.pipe_names:
        ruler = nlp.add_pipe("entity_ruler", before="ner")  # type: ignore
    else:
        ruler = nlp.get_pipe("entity_ruler")  # type: ignore

    patterns = []
    seniority = [{"LOWER": {"IN": ["senior", "sr", "sr.", "junior", "jr", "jr.", "lead", "staff", "principal"]}, "OP": "?"}]
    heads = [{"LOWER": {"IN": ROLE_HEADS}}]

    for syn in role_synonyms:
        head = [{"LOWER": t} for t in syn.split()]
        patterns.append({"label": "ROLE", "pattern": seniority + head + heads})
    patterns.append({"label": "ROLE", "pattern": seniority + heads})

    ruler.add_patterns(patterns)
    return nlp


def _first_ent(doc, label: str) -> Optional[str]:
    for ent in doc.ents:
        if ent.label_ == label:
            return ent.text.strip(" -—|:")
    return None


class SpacyBackend:
    name = "spacy"
    stages = frozenset([ClassifierStage.EXTRACTION])

    def __init__(self, model: str = "en_core_web_md", role_synonyms: Optional[List[str]] = None, nlp: Language = None):
        self.nlp = nlp or build_spacy(model, role_synonyms or DEFAULT_ROLE_SYNONYMS)
        self.name = f"spacy:{model}" if nlp is None else "spacy"

    def extract_company(self, subject: str, from_header: str, body: str) -> Optional[str]:
        for text in (subject, body[:1000]):
            org = _first_ent(self.nlp(text), "ORG")
            if org:
                return org
        return extract_company(subject, from_header, body)

    def extract_role(self, subject: str, body: str) -> Optional[str]:
        for text in (subject, body[:1500]):
            role = _first_ent(self.nlp(text), "ROLE")
            if role:
                return clean_position(role)
        m = re.search(r"for the (.*?) (?:position|role)", subject, flags=re.I)
        if m:
            return clean_position(m.group(1))
        return None

    def extract_location(self, body: str) -> Optional[str]:
        return _first_ent(self.nlp(body[:1500]), "GPE")

    def invoke(self, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        if stage not in self.stages:
            raise BackendError(f"{self.name} backend does not support {stage.value}")
        start = time.monotonic()
        subject, body = split_text(text)
        subject = metadata.get("subject", subject)
        body = metadata.get("body", body)
        sender = metadata.get("sender", "")
        fields = ExtractedFields(
            company=self.extract_company(subject, sender, body),
            position=self.extract_role(subject, body),
            status=classify_status(subject, body),
            location=self.extract_location(body),
            remote_status=extract_remote_status(subject, body),
            salary_range=extract_salary(body),
        )
        return BackendResult(
            fields=fields.as_dict(),
            raw_response=str(fields.as_dict()),
            duration=time.monotonic() - start,
        )
