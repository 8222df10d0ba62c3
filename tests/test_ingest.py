import base64
import json
from datetime import timezone

from application_tracker.ingest import from_gmail_message, iter_jsonl, parse_timestamp, strip_html


def _b64(text):
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def test_parse_timestamp_forms():
    millis = parse_timestamp("1700000000000")
    assert millis.tzinfo is not None and millis.year == 2023

    iso = parse_timestamp("2025-03-03T09:00:00Z")
    assert iso.utcoffset().total_seconds() == 0 and iso.hour == 9

    naive = parse_timestamp("2025-03-03 09:00", tz="America/New_York")
    assert naive.astimezone(timezone.utc).hour == 14

    free = parse_timestamp("Mon, 3 Mar 2025 09:00:00 +0000")
    assert free.day == 3 and free.tzinfo is not None

    assert parse_timestamp("") is None


def test_from_gmail_message_prefers_plain_text():
    payload = {
        "id": "g1",
        "threadId": "th1",
        "internalDate": "1741000000000",
        "payload": {
            "headers": [
                {"name": "Subject", "value": "Interview\u200b invitation"},
                {"name": "From", "value": "Acme <jobs@acme.com>"},
            ],
            "parts": [
                {"mimeType": "multipart/alternative", "parts": [
                    {"mimeType": "text/plain", "body": {"data": _b64("Hi there,\n  please pick a time.")}},
                    {"mimeType": "text/html", "body": {"data": _b64("<p>ignored</p>")}},
                ]},
            ],
        },
    }
    msg = from_gmail_message(payload, "me")
    assert msg.message_id == "g1" and msg.thread_id == "th1"
    assert msg.subject == "Interview invitation"
    assert msg.sender == "Acme <jobs@acme.com>"
    assert "please pick a time" in msg.body and "ignored" not in msg.body
    assert msg.headers["Subject"].startswith("Interview")


def test_html_only_body_is_stripped():
    payload = {
        "id": "g2",
        "internalDate": "1741000000000",
        "payload": {
            "mimeType": "text/html",
            "headers": [{"name": "Subject", "value": "Offer"}],
            "body": {"data": _b64("<style>p{}</style><p>We are pleased&nbsp;to offer</p>")},
        },
    }
    msg = from_gmail_message(payload, "me")
    assert msg.body == "We are pleased to offer"
    assert strip_html("a<br>b") == "a\nb"
    numeric = strip_html("<p>We&#8217;d love to chat &amp; you&#x2019;re invited</p>")
    assert numeric.strip() == "We\u2019d love to chat & you\u2019re invited"


def test_iter_jsonl_pages_and_skips_bad_lines(tmp_path):
    path = tmp_path / "mail.jsonl"
    lines = [
        {"message_id": f"m{i}", "thread_id": "t", "subject": f"s{i}", "sender": "a@b.com",
         "body": "", "received_at": "2025-03-03T09:00:00+00:00"}
        for i in range(5)
    ]
    text = "\n".join(json.dumps(l) for l in lines[:3]) + "\n{not json}\n\n" + \
        json.dumps({"message_id": "bad"}) + "\n" + "\n".join(json.dumps(l) for l in lines[3:])
    path.write_text(text, encoding="utf-8")

    pages = list(iter_jsonl(str(path), "me", page_size=2))
    assert [len(p) for p in pages] == [2, 2, 1]
    assert [m.message_id for p in pages for m in p] == ["m0", "m1", "m2", "m3", "m4"]
    assert all(m.account == "me" for p in pages for m in p)
