import itertools
from datetime import datetime, timedelta, timezone

import pytest

from application_tracker.models import MessageRecord
from application_tracker.store import Store

BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
_ids = itertools.count(1)


def make_message(subject, sender="Recruiting <jobs@acme.com>", body="", thread_id=None,
                 message_id=None, account="me", minutes=0):
    n = next(_ids)
    return MessageRecord(
        message_id=message_id or f"m{n}",
        thread_id=thread_id or f"t{n}",
        account=account,
        subject=subject,
        sender=sender,
        body=body,
        received_at=BASE_TIME + timedelta(minutes=minutes),
    )


@pytest.fixture
def store():
    s = Store(":memory:")
    s.init_schema()
    yield s
    s.close()
