from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

from sqlalchemy import select

from actions.helpers import next_prefixed_id
from db import SessionLocal
from models import IdCounter


def test_counter_starts_after_existing_ids(app_client):
    with SessionLocal() as db:
        first = next_prefixed_id(db, counter_key="APPEAL_2031", prefix="APL-2031-", existing_ids=["APL-2031-00041", "VER-2031-00100"])
        second = next_prefixed_id(db, counter_key="APPEAL_2031", prefix="APL-2031-")
        db.commit()

    assert (first, second) == ("APL-2031-00042", "APL-2031-00043")


def test_first_use_tolerates_a_concurrent_insert(app_client):
    with SessionLocal() as other:
        other.add(IdCounter(key="APPEAL_2032", nextValue=7))
        other.commit()

    with SessionLocal() as db:
        real_execute = db.execute
        calls = []

        def execute(stmt, *args, **kwargs):
            calls.append(stmt)
            if len(calls) == 1:
                # Lookup that ran before the other request committed its counter row.
                return SimpleNamespace(scalar_one_or_none=lambda: None)
            return real_execute(stmt, *args, **kwargs)

        with patch.object(db, "execute", side_effect=execute):
            new_id = next_prefixed_id(db, counter_key="APPEAL_2032", prefix="APL-2032-")
        db.commit()

    assert new_id == "APL-2032-00007"
    with SessionLocal() as db:
        assert db.execute(select(IdCounter.nextValue).where(IdCounter.key == "APPEAL_2032")).scalar_one() == 8
