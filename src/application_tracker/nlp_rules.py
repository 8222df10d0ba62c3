import re
from typing import List, Optional, Tuple

from .models import ExtractedFields, Status
from .triage import company_from_ats_domain, is_ats_domain, org_label, sender_domain

# priority order: first match wins
STATUS_RULES = [
    (Status.OFFER, r"(?:congratulations|job offer|offer letter|pleased to (?:offer|extend)|(?<!unable to )(?<!not )\boffer\b(?! code))"),
    (Status.INTERVIEW, r"(?:\binterview|schedule (?:a )?(?:time|call)|book a time|phone screen|video call|next steps?\b|online assessment|coding challenge|hackerrank|codility|\bassessment\b)"),
    (Status.REJECTED, r"(?:we regret|regret to inform|unfortunately|not (?:be )?moving forward|not selected|decided not to proceed|other candidates|position has been filled|\bdeclined\b)"),
    (Status.APPLIED, r"(?:application confirmation|application received|application submitted|thank(?:s| you) for (?:your )?applying|thank you for your application|we(?:\s+have)?\s+received your application|we'?ve received your application|confirm that your application|has been received|thank you for your interest|your application)"),
]

REJECTION_RE = re.compile(STATUS_RULES[2][1], re.I)

STATUS_SYNONYMS = {
    "applied": Status.APPLIED,
    "application": Status.APPLIED,
    "submitted": Status.APPLIED,
    "interview": Status.INTERVIEW,
    "interviewing": Status.INTERVIEW,
    "oa": Status.INTERVIEW,
    "assessment": Status.INTERVIEW,
    "screening": Status.INTERVIEW,
    "offer": Status.OFFER,
    "offered": Status.OFFER,
    "rejected": Status.REJECTED,
    "rejection": Status.REJECTED,
    "declined": Status.REJECTED,
}

JOB_KEYWORDS = [
    "application", "interview", "position", "job", "career", "hiring", "resume",
    "candidate", "recruit", "offer", "role", "employment", "opportunity",
    "screening", "onsite", "phone screen", "applying",
]

NON_JOB_KEYWORDS = [
    "newsletter", "unsubscribe", "marketing", "promotion", "sale", "discount",
    "webinar", "conference", "announcement", "blog", "article", "receipt", "invoice",
]

FALLBACK_MAX_CONFIDENCE = 0.6

COMPANY_RE = re.compile(
    r"\b(?:at|from|with|to|join)\s+((?:the\s+)?[A-Z][A-Za-z0-9&'.\-]*(?:\s+(?:[A-Z][A-Za-z0-9&'.\-]*|&|of))*)"
)
APPLICATION_TO_RE = re.compile(r"application (?:to|at)\s+([A-Za-z0-9&.\- ]{2,40})", re.I)
COMPANY_STOPWORDS = {"the", "our", "your", "us", "we", "you", "this", "team", "hiring", "talent"}

ROLE_WORDS = r"(?i:engineer|developer|analyst|scientist|manager|designer|intern|internship|consultant|specialist|coordinator|administrator|architect|associate|researcher|technician|director)"
ROLE_HINT = re.compile(
    r"\b((?:(?i:sr\.?|jr\.?)\s+)?(?:[A-Z][A-Za-z0-9+/&.\-]*\s+){0,4}" + ROLE_WORDS + r")\b"
)
POSITION_PATTERNS = [re.compile(p, re.I) for p in (
    r"for the (.{3,80}?) (?:position|role|opportunity)",
    r"(?:position|role|opportunity)\s*(?:of|as|:)\s*([^\n,.;()]{3,80})",
    r"(?:application|applying) for (?:the )?([^\n,.;()]{3,80}?)(?:\s+(?:position|role)\b|\s+at\b|$)",
    r"(?:interview|application|offer)[^\n\-–—|:]{0,20}[\-–—|:]\s*([^\n]{3,80})$",
)]

LOCATION_RE = re.compile(r"\b(?:[Ll]ocation|based in|located in|office in)\s*[:\-]?\s*([A-Z][A-Za-z .'\-]{1,40}(?:,\s*[A-Z]{2,})?)")
SALARY_RE = re.compile(
    r"\$\s?\d[\d,]*(?:\.\d+)?\s?[kK]?(?:\s?(?:-|–|to)\s?\$?\s?\d[\d,]*(?:\.\d+)?\s?[kK]?)?"
)
REMOTE_RULES = [
    ("hybrid", r"\bhybrid\b"),
    ("remote", r"\b(?:fully remote|remote(?:-first| position| role|\s*\(|\b))"),
    ("onsite", r"\b(?:on-?site|in-office|in office)\b"),
]


def _text(subject: str, body: str) -> str:
    return f"{subject or ''}\n{body or ''}"


def classify_status(subject: str, body: str) -> str:
    text = _text(subject, body).lower()
    for label, pattern in STATUS_RULES:
        if re.search(pattern, text):
            return label.value
    return Status.APPLIED.value


def normalize_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    key = str(value).strip().lower()
    if key in STATUS_SYNONYMS:
        return STATUS_SYNONYMS[key].value
    for word, status in STATUS_SYNONYMS.items():
        if word in key:
            return status.value
    return None


def is_rejection(subject: str, body: str) -> bool:
    return bool(REJECTION_RE.search(_text(subject, body)))


def score_relevance(subject: str, body: str, sender: str = "") -> Tuple[bool, float]:
    text = _text(subject, body[:2000] if body else "").lower()
    job_hits = sum(1 for kw in JOB_KEYWORDS if kw in text)
    non_job_hits = sum(1 for kw in NON_JOB_KEYWORDS if kw in text)
    if is_ats_domain(sender_domain(sender)):
        job_hits += 2
    margin = job_hits - non_job_hits
    if job_hits and margin > 0:
        return True, round(min(FALLBACK_MAX_CONFIDENCE, 0.3 + 0.1 * margin), 2)
    return False, round(min(FALLBACK_MAX_CONFIDENCE, 0.4 + 0.1 * non_job_hits), 2)


def _clean_company(candidate: str) -> Optional[str]:
    words = candidate.strip(" -—|:.,!").split()
    while words and words[0].lower() in COMPANY_STOPWORDS:
        words = words[1:]
    while words and words[-1].lower() in {"of", "&"}:
        words = words[:-1]
    if not words or len(words) > 5:
        return None
    name = " ".join(words)
    if re.search(ROLE_WORDS + r"|\b(?:application|position|interview|role|job)\b", name, flags=re.I):
        return None
    return name if len(name) > 1 else None


def extract_company(subject: str, from_header: str, body: str) -> Optional[str]:
    for text in (subject, (body or "")[:1000]):
        for m in COMPANY_RE.finditer(text or ""):
            name = _clean_company(m.group(1))
            if name:
                return name
    m = APPLICATION_TO_RE.search(subject or "")
    if m:
        name = _clean_company(m.group(1))
        if name:
            return name
    hint = company_from_ats_domain(from_header)
    if hint:
        return hint
    label = org_label(sender_domain(from_header))
    if label:
        return label.replace("-", " ").title()
    return None


def clean_position(position: Optional[str]) -> Optional[str]:
    if not position:
        return None
    cleaned = re.sub(r"\b[A-Z]_?\d{4,}\b|\b[A-Z]{2,}\d{4,}\b|-\d{6,}$|\(\d+\)$", "", position)
    cleaned = re.sub(r"\([^)]*\)", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" -—–|:!.,")
    cleaned = re.sub(r"^(?:the|a|an|our|your|this)\s+", "", cleaned, flags=re.I)
    return cleaned if len(cleaned) > 1 else None


def extract_role(subject: str, body: str) -> Optional[str]:
    for text in (subject or "", (body or "")[:1500]):
        m = ROLE_HINT.search(text)
        if m:
            return clean_position(m.group(1))
    for text in (subject or "", (body or "")[:1500]):
        for rx in POSITION_PATTERNS:
            m = rx.search(text)
            if m:
                role = clean_position(m.group(1))
                if role:
                    return role
    return None


def extract_location(body: str) -> Optional[str]:
    m = LOCATION_RE.search(body or "")
    return m.group(1).strip(" .,") if m else None


def extract_remote_status(subject: str, body: str) -> Optional[str]:
    text = _text(subject, body).lower()
    for label, pattern in REMOTE_RULES:
        if re.search(pattern, text):
            return label
    return None


def extract_salary(body: str) -> Optional[str]:
    m = SALARY_RE.search(body or "")
    return m.group(0).strip() if m else None


def extract_fields(subject: str, from_header: str, body: str) -> ExtractedFields:
    return ExtractedFields(
        company=extract_company(subject, from_header, body),
        position=extract_role(subject, body),
        status=classify_status(subject, body),
        location=extract_location(body),
        remote_status=extract_remote_status(subject, body),
        salary_range=extract_salary(body),
    )


def keywords_found(text: str) -> List[str]:
    lowered = (text or "").lower()
    return [kw for kw in JOB_KEYWORDS if kw in lowered]
