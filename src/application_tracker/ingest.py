import base64, html, json, logging, re
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import dateparser
import pytz

from .models import MessageRecord

logger = logging.getLogger(__name__)


def _get_header(headers: List[Dict[str, str]], name: str) -> str:
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value", "")
    return ""


def _decode_payload(data: str) -> str:
    # Gmail returns base64url-encoded data
    missing_padding = len(data) % 4
    if missing_padding:
        data += "=" * (4 - missing_padding)
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def _clean_text(s: str) -> str:
    s = re.sub(r"[\u200B-\u200D\uFEFF]", "", s or "")
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\s+\n", "\n", s)
    return s.strip()


def strip_html(markup: str) -> str:
    markup = re.sub(r"(?is)<(script|style)[^>]*>.*?</\1>", " ", markup)
    markup = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</tr>", "\n", markup)
    text = re.sub("<[^<]+?>", " ", markup)
    # named and numeric entities; nbsp becomes a plain space
    return html.unescape(text).replace("\xa0", " ")


def extract_plain_text(message: Dict[str, Any]) -> Tuple[str, str, str]:
    """Returns: (subject, from_email, text). Plain parts win over HTML ones."""
    payload = message.get("payload", {})
    headers = payload.get("headers", [])
    subject = _get_header(headers, "Subject")
    from_email = _get_header(headers, "From")

    plain, html_parts = [], []
    def traverse(parts):
        for p in parts:
            mime = p.get("mimeType", "")
            if "parts" in p:
                traverse(p["parts"])
            elif mime == "text/plain" and "data" in p.get("body", {}):
                plain.append(_decode_payload(p["body"]["data"]))
            elif mime == "text/html" and "data" in p.get("body", {}):
                html_parts.append(strip_html(_decode_payload(p["body"]["data"])))

    if "parts" in payload:
        traverse(payload["parts"])
    else:
        body = payload.get("body", {})
        if "data" in body:
            decoded = _decode_payload(body["data"])
            if payload.get("mimeType") == "text/html":
                html_parts.append(strip_html(decoded))
            else:
                plain.append(decoded)

    body_text = "\n".join(plain or html_parts)
    return _clean_text(subject), _clean_text(from_email), _clean_text(body_text)


def parse_timestamp(value: Any, tz: str = "UTC") -> Optional[datetime]:
    """Epoch millis, ISO text or free-form dates. Naive values are taken as ``tz``."""
    if value is None or value == "":
        return None
    zone = pytz.timezone(tz)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=pytz.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            dt = dateparser.parse(str(value))
        if dt is None:
            return None
    if dt.tzinfo is None:
        dt = zone.localize(dt)
    return dt


def from_gmail_message(payload: Dict[str, Any], account: str, tz: str = "UTC") -> MessageRecord:
    subject, sender, body = extract_plain_text(payload)
    headers = {h.get("name", ""): h.get("value", "") for h in payload.get("payload", {}).get("headers", [])}
    received = parse_timestamp(payload.get("internalDate"), tz) or parse_timestamp(headers.get("Date"), tz)
    return MessageRecord(
        message_id=payload["id"],
        thread_id=payload.get("threadId", ""),
        account=account,
        subject=subject,
        sender=sender,
        body=body,
        received_at=received or datetime.now(pytz.utc),
        headers=headers,
    )


def from_record(data: Dict[str, Any], account: str, tz: str = "UTC") -> MessageRecord:
    """One line of a JSON-lines export: either a Gmail ``format=full`` message or flat fields."""
    if "payload" in data:
        return from_gmail_message(data, account, tz)
    received = parse_timestamp(data.get("received_at") or data.get("date"), tz)
    if received is None:
        raise ValueError(f"Message {data.get('message_id')!r} has no usable timestamp")
    return MessageRecord(
        message_id=str(data["message_id"]),
        thread_id=str(data.get("thread_id") or ""),
        account=data.get("account") or account,
        subject=_clean_text(data.get("subject", "")),
        sender=_clean_text(data.get("sender") or data.get("from", "")),
        body=_clean_text(data.get("body", "")),
        received_at=received,
        headers=data.get("headers") or {},
    )


def iter_jsonl(path: str, account: str, page_size: int = 100, tz: str = "UTC") -> Iterator[List[MessageRecord]]:
    page: List[MessageRecord] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                page.append(from_record(json.loads(line), account, tz))
            except (ValueError, KeyError) as e:
                logger.warning("[INGEST] %s:%d skipped: %s", path, lineno, e)
                continue
            if len(page) >= page_size:
                yield page
                page = []
    if page:
        yield page
