from __future__ import annotations

import json

from actions.verification import aggregate, canonical_entity, match_score
from services.field_compare import FieldComparison


VERIFIER = "TEST:VERIFIER:VRF-T1"
OTHER_VERIFIER = "TEST:VERIFIER:VRF-T2"
ADMIN = "TEST:ADMIN:ADM-T1"


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _sathish(**overrides) -> dict:
    data = {
        "employeeId": "6002056",
        "name": "S Sathish",
        "entityName": "TVSCSHIB",
        "designation": "Executive",
        "dateOfJoining": "2021-02-05",
        "dateOfLeaving": "2024-03-31",
        "exitReason": "Resigned",
        "consentGiven": True,
    }
    data.update(overrides)
    return data


def _cmp(is_match: bool, field: str = "x") -> FieldComparison:
    return FieldComparison(field=field, label=field, verifierValue="", companyValue="", isMatch=is_match)


def test_match_score_rounds_half_up():
    assert match_score(6, 6) == 100
    assert match_score(4, 6) == 67
    assert match_score(5, 6) == 83
    assert match_score(1, 8) == 13
    assert match_score(0, 6) == 0
    assert match_score(0, 0) == 0


def test_aggregate_status():
    assert aggregate([_cmp(True)] * 6, identity_ok=True) == ("matched", 100)
    assert aggregate([_cmp(True)] * 4 + [_cmp(False)] * 2, identity_ok=True) == ("partial_match", 67)
    assert aggregate([_cmp(False)] * 6, identity_ok=True) == ("mismatch", 0)
    # Identity failure wins regardless of how many other fields agree.
    assert aggregate([_cmp(True)] * 5 + [_cmp(False)], identity_ok=False) == ("mismatch", 83)


def test_canonical_entity_accepts_code_or_names():
    assert canonical_entity("TVSCSHIB") == "TVSCSHIB"
    assert canonical_entity("tvs credit services limited") == "TVSCSHIB"
    assert canonical_entity("TVS Credit") == "TVSCSHIB"
    assert canonical_entity("Hinduja Leyland Finance") == "HIB"
    assert canonical_entity(" Acme ") == "Acme"


def test_submit_all_fields_match(app_client):
    _app, client = app_client

    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": _sathish(name="s. sathish")})
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    rec = body["data"]
    assert rec["overallStatus"] == "matched"
    assert rec["matchScore"] == 100
    assert len(rec["comparisonResults"]) == 6
    assert all(c["isMatch"] for c in rec["comparisonResults"])
    assert rec["verificationId"].startswith("VER-")
    assert rec["reportUrl"] == f"/api/verifications/{rec['verificationId']}/report.pdf"


def test_submit_partial_match(app_client):
    _app, client = app_client

    data = _sathish(designation="Senior Executive", dateOfLeaving="2024-04-30")
    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": data})
    rec = res.get_json()["data"]

    assert rec["overallStatus"] == "partial_match"
    assert rec["matchScore"] == 67
    mismatched = [c["field"] for c in rec["comparisonResults"] if not c["isMatch"]]
    assert mismatched == ["designation", "dateOfLeaving"]


def test_submit_identity_mismatch_forces_mismatch(app_client):
    _app, client = app_client

    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": _sathish(name="Someone Else")})
    rec = res.get_json()["data"]

    assert rec["overallStatus"] == "mismatch"
    assert rec["matchScore"] == 83
    assert all(c["companyValue"] == "" for c in rec["comparisonResults"])


def test_submit_requires_every_field(app_client):
    _app, client = app_client

    data = _sathish()
    del data["exitReason"]
    data["designation"] = "  "
    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": data})

    assert res.status_code == 400
    err = res.get_json()["error"]
    assert err["code"] == "BAD_REQUEST"
    assert "designation" in err["message"]
    assert "exitReason" in err["message"]


def test_submit_unknown_employee(app_client):
    _app, client = app_client

    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": _sathish(employeeId="9999999")})
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"


def test_submit_requires_login(app_client):
    _app, client = app_client

    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": None, "data": _sathish()})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"


def test_admin_cannot_submit(app_client):
    _app, client = app_client

    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": ADMIN, "data": _sathish()})
    assert res.status_code == 403


def test_verification_visible_only_to_owner_and_admins(app_client):
    _app, client = app_client

    res = _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": _sathish()})
    vid = res.get_json()["data"]["verificationId"]

    res = client.get(f"/api/verifications/{vid}", headers={"Authorization": f"Bearer {VERIFIER}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["verificationId"] == vid

    res = client.get(f"/api/verifications/{vid}", headers={"Authorization": f"Bearer {OTHER_VERIFIER}"})
    assert res.status_code == 403

    res = client.get(f"/api/verifications/{vid}", headers={"Authorization": f"Bearer {ADMIN}"})
    assert res.status_code == 200

    res = client.get("/api/verifications", headers={"Authorization": f"Bearer {OTHER_VERIFIER}"})
    assert res.get_json()["data"]["pagination"]["total"] == 0

    res = client.get("/api/verifications", headers={"Authorization": f"Bearer {VERIFIER}"})
    items = res.get_json()["data"]["items"]
    assert [i["verificationId"] for i in items] == [vid]
    assert items[0]["appeal"] is None


def test_report_pdf(app_client):
    _app, client = app_client

    res = client.post("/api/verify/submit", json=_sathish(), headers={"Authorization": f"Bearer {VERIFIER}"})
    assert res.status_code == 201
    vid = res.get_json()["data"]["verificationId"]

    res = client.get(f"/api/verifications/{vid}/report.pdf", headers={"Authorization": f"Bearer {VERIFIER}"})
    assert res.status_code == 200
    assert res.mimetype == "application/pdf"
    assert res.data.startswith(b"%PDF")

    res = client.get(f"/api/verifications/{vid}/report.pdf", headers={"Authorization": f"Bearer {OTHER_VERIFIER}"})
    assert res.status_code == 403
