"""Simulated diagnostics service for DUMMY_MODE.

Mounted as an httpx.MockTransport handler so the real AnalysisClient and
HistoryAggregator run unchanged against it. Cases report "processing" for
the first polls and then complete with an analysis derived from the
submitted symptoms, so demos exercise the whole polling path.
"""

import json
import logging
import math
import re
import uuid
from datetime import UTC, datetime

import httpx

from caseflow.services.normalizer import normalize

logger = logging.getLogger(__name__)

PROCESSING_POLLS = 2

_CASE_PATH = re.compile(r"^/diagnostics/cases/(?P<case_id>[^/]+)$")
_NOTES_PATH = re.compile(r"^/diagnostics/cases/(?P<case_id>[^/]+)/notes$")
_HISTORY_PATH = re.compile(r"^/diagnostics/patients/(?P<patient_id>[^/]+)/history$")


def _dummy_analysis(snapshot: dict) -> dict:
    """Keyword-driven analysis in the upstream analysis shape."""
    symptoms = snapshot.get("symptoms") or {}
    vitals = snapshot.get("vitals") or {}
    text = " ".join((symptoms.get("subjective") or []) + (symptoms.get("objective") or [])).lower()

    if "chest" in text:
        primary = {"condition": "Stable angina", "confidence": 0.72,
                   "reasoning": "Exertional chest discomfort"}
        differentials = [
            {"condition": "Gastro-oesophageal reflux", "confidence": 0.41, "reasoning": "Burning quality"},
            {"condition": "Musculoskeletal chest pain", "confidence": 0.3, "reasoning": "Reproducible on palpation"},
        ]
        tests = [{"test": "12-lead ECG", "priority": "high", "reasoning": "Exclude ischaemia"}]
    elif "cough" in text or "fever" in text:
        primary = {"condition": "Upper respiratory tract infection", "confidence": 0.85,
                   "reasoning": "Cough and fever of short duration"}
        differentials = [
            {"condition": "Influenza", "confidence": 0.55, "reasoning": "Seasonal presentation"},
            {"condition": "Community-acquired pneumonia", "confidence": 0.2, "reasoning": "Less likely without crackles"},
        ]
        tests = [{"test": "Full blood count", "priority": "low", "reasoning": "If no improvement in 5 days"}]
    elif "headache" in text:
        primary = {"condition": "Tension-type headache", "confidence": 0.78,
                   "reasoning": "Bilateral band-like pain"}
        differentials = [{"condition": "Migraine without aura", "confidence": 0.45, "reasoning": "Recurrent episodes"}]
        tests = []
    else:
        primary = {"condition": "Non-specific viral illness", "confidence": 0.6,
                   "reasoning": "Self-limiting symptom pattern"}
        differentials = []
        tests = []

    risk_factors = []
    spo2 = vitals.get("oxygenSaturation")
    if spo2 and spo2 < 92:
        risk_factors.append({"factor": "Low oxygen saturation", "severity": "high",
                             "description": "Refer for same-day assessment"})
    temp = vitals.get("temperature")
    if temp and temp >= 39:
        risk_factors.append({"factor": "High fever", "severity": "medium",
                             "description": "Review hydration and sepsis signs"})

    return {
        "primaryDiagnosis": primary,
        "differentialDiagnoses": differentials,
        "recommendedTests": tests,
        "treatmentSuggestions": [
            {"treatment": "Paracetamol 1 g four times daily", "reasoning": "Symptomatic relief"},
        ],
        "riskFactors": risk_factors,
        "followUpRecommendations": [
            {"action": "Review with GP", "timeframe": "1 week",
             "reasoning": "Review if symptoms persist beyond one week"},
        ],
    }


class DummyDiagnosticsService:
    """In-memory stand-in for the remote diagnostics API."""

    def __init__(self, processing_polls: int = PROCESSING_POLLS) -> None:
        self.processing_polls = processing_polls
        self.cases: dict[str, dict] = {}
        self.history: dict[str, list[dict]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/diagnostics/cases":
            return self._create_case(request)
        if match := _NOTES_PATH.match(path):
            if request.method == "POST":
                return self._save_notes(match["case_id"], request)
        elif match := _CASE_PATH.match(path):
            if request.method == "GET":
                return self._poll_case(match["case_id"])
        elif match := _HISTORY_PATH.match(path):
            if request.method == "GET":
                return self._list_history(match["patient_id"], request)
        return httpx.Response(404, json={"success": False, "message": "Not found"})

    def _create_case(self, request: httpx.Request) -> httpx.Response:
        try:
            body = json.loads(request.content)
        except ValueError:
            return httpx.Response(400, json={"success": False, "message": "Invalid JSON body"})
        patient_id = body.get("patientId")
        if not patient_id:
            return httpx.Response(422, json={
                "success": False,
                "details": [{"path": "patientId", "message": "Patient is required"}],
            })
        if not body.get("consentObtained"):
            return httpx.Response(403, json={"success": False, "message": "Patient consent not recorded"})

        case_id = uuid.uuid4().hex
        self.cases[case_id] = {
            "patient_id": patient_id,
            "snapshot": body.get("inputSnapshot") or {},
            "polls": 0,
            "created_at": datetime.now(UTC).isoformat(),
        }
        logger.info("DUMMY_MODE: accepted case %s for patient %s", case_id, patient_id)
        return httpx.Response(201, json={"success": True, "data": {"id": case_id, "status": "pending"}})

    def _poll_case(self, case_id: str) -> httpx.Response:
        case = self.cases.get(case_id)
        if case is None:
            return httpx.Response(404, json={"success": False, "message": "Case not found"})
        case["polls"] += 1
        if case["polls"] <= self.processing_polls:
            return httpx.Response(200, json={"success": True, "data": {"id": case_id, "status": "processing"}})

        analysis = _dummy_analysis(case["snapshot"])
        body = {
            "id": case_id,
            "status": "completed",
            "analysis": analysis,
            "confidence": analysis["primaryDiagnosis"]["confidence"],
            "processingTime": 1200 * case["polls"],
        }
        if "record" not in case:
            case["record"] = {
                "_id": case_id,
                "caseId": case_id,
                "createdAt": case["created_at"],
                "status": "completed",
                "symptoms": case["snapshot"].get("symptoms"),
                "vitalSigns": case["snapshot"].get("vitals"),
                "aiAnalysis": normalize(body, case_id=case_id).model_dump(mode="json", by_alias=True),
                "processingTime": body["processingTime"],
            }
            self.history.setdefault(case["patient_id"], []).insert(0, case["record"])
        return httpx.Response(200, json={"success": True, "data": body})

    def _save_notes(self, case_id: str, request: httpx.Request) -> httpx.Response:
        record = self.cases.get(case_id, {}).get("record")
        if record is None:
            return httpx.Response(404, json={"success": False, "message": "Case not found"})
        notes = json.loads(request.content).get("notes", "")
        decision = record.setdefault("pharmacistDecision", {})
        decision["notes"] = notes
        decision["reviewedAt"] = datetime.now(UTC).isoformat()
        return httpx.Response(200, json={"success": True, "message": "Notes saved"})

    def _list_history(self, patient_id: str, request: httpx.Request) -> httpx.Response:
        page = int(request.url.params.get("page", "1"))
        limit = int(request.url.params.get("limit", "10"))
        records = self.history.get(patient_id, [])
        start = (page - 1) * limit
        return httpx.Response(200, json={
            "success": True,
            "data": {
                "cases": records[start:start + limit],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": len(records),
                    "pages": math.ceil(len(records) / limit) if limit else 0,
                },
            },
        })
