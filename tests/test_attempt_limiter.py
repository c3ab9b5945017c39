from __future__ import annotations

import json

from sqlalchemy import select

from db import SessionLocal
from models import VerificationAttempt
from services import attempt_limiter


VERIFIER = "TEST:VERIFIER:VRF-T1"
OTHER_VERIFIER = "TEST:VERIFIER:VRF-T2"
BLOCKED_MESSAGE = "Maximum attempts reached. Please reach out to exit team - exitteam@example.com"


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _validate(client, token: str, name: str, employee_id: str = "6002056"):
    return _api(client, {"action": "EMPLOYEE_VALIDATE", "token": token, "data": {"employeeId": employee_id, "name": name}})


def test_record_failure_blocks_on_third_failure(app_client):
    with SessionLocal() as db:
        first = attempt_limiter.record_failure(db, "VRF-1", "6002056", max_attempts=3)
        second = attempt_limiter.record_failure(db, "VRF-1", "6002056", max_attempts=3)
        third = attempt_limiter.record_failure(db, "VRF-1", "6002056", max_attempts=3)
        fourth = attempt_limiter.record_failure(db, "VRF-1", "6002056", max_attempts=3)
        db.commit()

    assert (first["attemptCount"], first["isBlocked"], first["justBlocked"]) == (1, False, False)
    assert (second["attemptCount"], second["isBlocked"]) == (2, False)
    assert (third["attemptCount"], third["isBlocked"], third["justBlocked"]) == (3, True, True)
    assert fourth["justBlocked"] is False

    with SessionLocal() as db:
        assert attempt_limiter.check_blocked(db, "VRF-1", "6002056") is True
        assert attempt_limiter.check_blocked(db, "VRF-2", "6002056") is False
        rows = db.execute(select(VerificationAttempt)).scalars().all()
        assert len(rows) == 1
        assert rows[0].blockedAt


def test_success_resets_counter_even_when_blocked(app_client):
    with SessionLocal() as db:
        for _ in range(3):
            attempt_limiter.record_failure(db, "VRF-1", "6002056", max_attempts=3)
        res = attempt_limiter.check_and_record(db, "VRF-1", "6002056", success=True, max_attempts=3)
        db.commit()

    assert res == {"blocked": False, "attemptCount": 0, "justBlocked": False}
    with SessionLocal() as db:
        assert attempt_limiter.get_state(db, "VRF-1", "6002056") == {"attemptCount": 0, "isBlocked": False, "blockedAt": ""}


def test_validate_employee_blocks_after_three_failures(app_client):
    _app, client = app_client

    res = _validate(client, VERIFIER, "Wrong Name")
    assert res.status_code == 400
    assert "2 attempt(s) remaining" in res.get_json()["error"]["message"]

    res = _validate(client, VERIFIER, "Wrong Name")
    assert "1 attempt(s) remaining" in res.get_json()["error"]["message"]

    res = _validate(client, VERIFIER, "Wrong Name")
    assert res.status_code == 403
    assert res.get_json()["error"] == {"code": "BLOCKED", "message": BLOCKED_MESSAGE}

    # The correct name no longer helps: the pair stays blocked.
    res = _validate(client, VERIFIER, "S Sathish")
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "BLOCKED"

    # Submissions for the blocked pair are refused too.
    res = _api(
        client,
        {
            "action": "VERIFICATION_SUBMIT",
            "token": VERIFIER,
            "data": {
                "employeeId": "6002056",
                "name": "S Sathish",
                "entityName": "TVSCSHIB",
                "designation": "Executive",
                "dateOfJoining": "2021-02-05",
                "dateOfLeaving": "2024-03-31",
                "exitReason": "Resigned",
            },
        },
    )
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "BLOCKED"

    # Other verifiers are unaffected.
    res = _validate(client, OTHER_VERIFIER, "S Sathish")
    assert res.status_code == 200
    assert res.get_json()["data"]["valid"] is True


def test_unknown_employee_counts_as_failure(app_client):
    _app, client = app_client

    res = _validate(client, VERIFIER, "Anyone", employee_id="0000001")
    assert res.status_code == 404
    assert "2 attempt(s) remaining" in res.get_json()["error"]["message"]

    with SessionLocal() as db:
        assert attempt_limiter.get_state(db, "VRF-T1", "0000001")["attemptCount"] == 1


def test_successful_validation_resets_failures(app_client):
    _app, client = app_client

    _validate(client, VERIFIER, "Wrong Name")
    _validate(client, VERIFIER, "Wrong Name")
    res = _validate(client, VERIFIER, "s sathish")
    assert res.status_code == 200
    assert res.get_json()["data"]["employee"]["employeeId"] == "6002056"

    with SessionLocal() as db:
        assert attempt_limiter.get_state(db, "VRF-T1", "6002056")["attemptCount"] == 0

    res = _validate(client, VERIFIER, "Wrong Name")
    assert "2 attempt(s) remaining" in res.get_json()["error"]["message"]


def test_entity_mismatch_counts_as_failure(app_client):
    _app, client = app_client

    res = _api(
        client,
        {"action": "EMPLOYEE_VALIDATE", "token": VERIFIER, "data": {"employeeId": "6002056", "name": "S Sathish", "entityName": "HIB"}},
    )
    assert res.status_code == 400
    assert "entity" in res.get_json()["error"]["message"]


def _submit(client, token: str, name: str):
    return _api(
        client,
        {
            "action": "VERIFICATION_SUBMIT",
            "token": token,
            "data": {
                "employeeId": "6002056",
                "name": name,
                "entityName": "TVSCSHIB",
                "designation": "Clerk",
                "dateOfJoining": "2020-01-01",
                "dateOfLeaving": "2020-12-31",
                "exitReason": "Other",
            },
        },
    )


def test_submit_with_wrong_name_counts_and_blocks(app_client):
    _app, client = app_client

    for _ in range(2):
        res = _submit(client, VERIFIER, "Guess")
        assert res.status_code == 200
        rec = res.get_json()["data"]
        assert rec["overallStatus"] == "mismatch"
        assert [c["companyValue"] for c in rec["comparisonResults"]] == [""] * 6

    res = _submit(client, VERIFIER, "Guess")
    assert res.status_code == 403
    assert res.get_json()["error"] == {"code": "BLOCKED", "message": BLOCKED_MESSAGE}

    res = _submit(client, VERIFIER, "S Sathish")
    assert res.status_code == 403
    assert "S Sathish" not in res.get_data(as_text=True)

    with SessionLocal() as db:
        state = attempt_limiter.get_state(db, "VRF-T1", "6002056")
    assert (state["attemptCount"], state["isBlocked"]) == (3, True)


def test_submit_unknown_employee_counts_as_failure(app_client):
    _app, client = app_client

    res = _api(
        client,
        {
            "action": "VERIFICATION_SUBMIT",
            "token": VERIFIER,
            "data": {
                "employeeId": "0000009",
                "name": "Anyone",
                "entityName": "TVSCSHIB",
                "designation": "Clerk",
                "dateOfJoining": "2020-01-01",
                "dateOfLeaving": "2020-12-31",
                "exitReason": "Other",
            },
        },
    )
    assert res.status_code == 404
    assert "2 attempt(s) remaining" in res.get_json()["error"]["message"]


def test_submit_with_correct_name_resets_failures(app_client):
    _app, client = app_client

    _validate(client, VERIFIER, "Wrong Name")
    _submit(client, VERIFIER, "Guess")
    with SessionLocal() as db:
        assert attempt_limiter.get_state(db, "VRF-T1", "6002056")["attemptCount"] == 2

    res = _submit(client, VERIFIER, "S Sathish")
    assert res.status_code == 200
    assert res.get_json()["data"]["comparisonResults"][0]["companyValue"] == "S Sathish"
    with SessionLocal() as db:
        assert attempt_limiter.get_state(db, "VRF-T1", "6002056")["attemptCount"] == 0
