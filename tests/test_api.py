"""Tests for the workflow REST and WebSocket endpoints."""

import asyncio

from fastapi.testclient import TestClient

from caseflow.main import app


async def _select(async_client, patient_id: str = "p1") -> dict:
    resp = await async_client.post("/api/workflow/patient", json={"patient_id": patient_id})
    assert resp.status_code == 200
    return resp.json()


async def _wait_for_state(async_client, state: str, with_history: bool = False, attempts: int = 400) -> dict:
    for _ in range(attempts):
        data = (await async_client.get("/api/workflow")).json()
        if data["state"] == state and (data["history"] or not with_history):
            return data
        await asyncio.sleep(0.005)
    raise AssertionError(f"workflow never reached {state}")


async def test_health(async_client):
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_snapshot_starts_idle(async_client):
    resp = await async_client.get("/api/workflow")
    assert resp.status_code == 200
    data = resp.json()
    assert data["state"] == "idle"
    assert data["patientId"] is None


async def test_select_patient(async_client):
    data = await _select(async_client)
    assert data["state"] == "editing"
    assert data["draft"]["patientId"] == "p1"
    assert data["report"]["isValid"] is False


async def test_edit_draft_and_vitals(async_client):
    await _select(async_client)
    resp = await async_client.put("/api/workflow/symptoms/0", json={"text": "sore throat"})
    assert resp.status_code == 200
    assert resp.json()["isValid"] is True

    resp = await async_client.patch("/api/workflow/draft", json={"duration": "forever"})
    assert resp.status_code == 200
    resp = await async_client.post("/api/workflow/touch", json={"fields": ["duration"]})
    errors = resp.json()["errors"]
    assert errors[0]["field"] == "duration"

    resp = await async_client.patch("/api/workflow/vitals", json={"bloodPressure": "120/80"})
    assert resp.status_code == 200


async def test_invalid_vital_type(async_client):
    await _select(async_client)
    resp = await async_client.patch("/api/workflow/vitals", json={"heartRate": "fast"})
    assert resp.status_code == 422


async def test_unknown_draft_field(async_client):
    await _select(async_client)
    resp = await async_client.patch("/api/workflow/draft", json={"patientId": "p2"})
    assert resp.status_code == 422


async def test_symptom_not_found(async_client):
    await _select(async_client)
    resp = await async_client.delete("/api/workflow/symptoms/5")
    assert resp.status_code == 404


async def test_add_symptom(async_client):
    await _select(async_client)
    resp = await async_client.post("/api/workflow/symptoms", json={"kind": "objective", "text": "rash"})
    assert resp.status_code == 200
    data = (await async_client.get("/api/workflow")).json()
    assert [s["kind"] for s in data["draft"]["symptoms"]] == ["subjective", "objective"]


async def test_submit_requires_consent_then_completes(async_client, diagnostics):
    await _select(async_client)
    await async_client.put("/api/workflow/symptoms/0", json={"text": "cough and fever"})

    resp = await async_client.post("/api/workflow/submit")
    assert resp.status_code == 200
    assert resp.json()["consentRequested"] is True
    assert diagnostics.cases == {}

    resp = await async_client.post("/api/workflow/consent")
    assert resp.json()["state"] == "submitting"

    data = await _wait_for_state(async_client, "reviewed")
    assert data["analysis"]["confidenceScore"] == 85
    assert data["analysis"]["differentialDiagnoses"][0]["severity"] == "high"
    assert data["error"] is None


async def test_edit_while_in_flight_conflicts(async_client, controller, diagnostics):
    diagnostics.processing_polls = 10_000
    controller.analysis_client.poll_interval = 0.05
    await _select(async_client)
    await async_client.put("/api/workflow/symptoms/0", json={"text": "cough and fever"})
    await async_client.post("/api/workflow/submit")
    resp = await async_client.post("/api/workflow/consent")
    assert resp.json()["state"] == "submitting"

    resp = await async_client.patch("/api/workflow/draft", json={"duration": "2 days"})
    assert resp.status_code == 409
    diagnostics.processing_polls = 0
    await _wait_for_state(async_client, "reviewed")


async def test_history_notes_export_and_compare(async_client, diagnostics):
    await _select(async_client)
    await async_client.put("/api/workflow/symptoms/0", json={"text": "headache"})
    await async_client.post("/api/workflow/consent")
    await async_client.post("/api/workflow/submit")
    data = await _wait_for_state(async_client, "reviewed", with_history=True)
    case_id = data["requestId"]

    resp = await async_client.get("/api/workflow/history")
    assert [r["id"] for r in resp.json()] == [case_id]

    resp = await async_client.post(f"/api/workflow/history/{case_id}/notes", json={"notes": "Advised rest"})
    assert resp.status_code == 200
    resp = await async_client.get("/api/workflow/history")
    assert resp.json()[0]["pharmacistDecision"]["notes"] == "Advised rest"

    resp = await async_client.get(f"/api/workflow/history/{case_id}/export")
    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == f'attachment; filename="case-{case_id}.json"'
    assert resp.json()["aiAnalysis"]["differentialDiagnoses"][0]["condition"] == "Tension-type headache"

    resp = await async_client.post("/api/workflow/history/compare", json={"case_ids": [case_id, "other"]})
    assert len(resp.json()) == 1


async def test_notes_for_unknown_case(async_client):
    await _select(async_client)
    resp = await async_client.post("/api/workflow/history/missing/notes", json={"notes": "x"})
    assert resp.status_code == 404


async def test_export_unknown_case(async_client):
    await _select(async_client)
    resp = await async_client.get("/api/workflow/history/missing/export")
    assert resp.status_code == 404


async def test_load_more_history(async_client, diagnostics):
    diagnostics.history["p1"] = [{"_id": f"case-{n}"} for n in range(15)]
    data = await _select(async_client)
    assert len(data["history"]) == 10
    assert data["historyTotal"] == 15

    resp = await async_client.post("/api/workflow/history/more")
    assert len(resp.json()["history"]) == 15
    assert resp.json()["historyPage"] == 2


async def test_retry_without_error_is_noop(async_client):
    await _select(async_client)
    resp = await async_client.post("/api/workflow/retry")
    assert resp.json()["state"] == "editing"


def test_websocket_streams_workflow_events():
    """Full app (dummy service, in-memory cache) pushes state changes to listeners."""
    with TestClient(app) as client:
        with client.websocket_connect("/ws/workflow") as ws:
            first = ws.receive_json()
            assert first["type"] == "snapshot"
            assert first["state"] == "idle"

            resp = client.post("/api/workflow/patient", json={"patient_id": "p7"})
            assert resp.status_code == 200

            event = ws.receive_json()
            assert event["type"] == "state"
            assert event["state"] == "editing"
            assert event["patient_id"] == "p7"
