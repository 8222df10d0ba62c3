from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import SelectionError
from .models import FIELD_NAMES, ExtractedFields, ExtractionAttempt

FIELD_WEIGHTS = {
    "company": 3,
    "position": 2,
    "status": 2,
    "location": 1,
    "remote_status": 1,
    "salary_range": 1,
}

SELECTION_METHODS = ("auto_best", "consensus", "fastest", "first")


@dataclass(frozen=True)
class Selection:
    fields: ExtractedFields
    model_id: str
    method: str


def score_extraction(fields: Optional[ExtractedFields]) -> int:
    """Completeness: company counts most, then position and status."""
    if fields is None:
        return 0
    return sum(weight for name, weight in FIELD_WEIGHTS.items() if getattr(fields, name))


def _auto_best(attempts: Sequence[ExtractionAttempt]) -> ExtractionAttempt:
    best = attempts[0]
    for current in attempts[1:]:
        cur_score, best_score = score_extraction(current.fields), score_extraction(best.fields)
        if cur_score > best_score or (cur_score == best_score and current.duration < best.duration):
            best = current
    return best


def _fastest(attempts: Sequence[ExtractionAttempt]) -> ExtractionAttempt:
    return min(attempts, key=lambda a: a.duration)


def _consensus(attempts: Sequence[ExtractionAttempt]) -> ExtractedFields:
    values = {}
    for name in FIELD_NAMES:
        counts = Counter(getattr(a.fields, name) for a in attempts if getattr(a.fields, name))
        # most_common keeps first-seen order among equal counts
        values[name] = counts.most_common(1)[0][0] if counts else None
    return ExtractedFields(**values)


def select_extraction(attempts: List[ExtractionAttempt], method: Optional[str] = "auto_best") -> Selection:
    if not attempts:
        raise SelectionError("No extraction attempts to select from")
    if method == "consensus":
        return Selection(_consensus(attempts), "consensus", "consensus")
    if method == "auto_best":
        chosen = _auto_best(attempts)
    elif method == "fastest":
        chosen = _fastest(attempts)
    else:
        chosen = attempts[0]
        method = "first"
    return Selection(chosen.fields, chosen.model_id, method)
