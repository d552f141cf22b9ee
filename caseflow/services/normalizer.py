"""Normalize upstream analysis payloads into NormalizedAnalysis.

The diagnostics service has shipped two shapes over time:

* the analysis shape: ``{"analysis": {"primaryDiagnosis", "differentialDiagnoses",
  "recommendedTests", "treatmentSuggestions", "riskFactors",
  "followUpRecommendations"}, "confidence": 0..1, "processingTime": ms}``
* the older diagnostic-result shape: ``{"diagnoses", "suggestedTests",
  "medicationSuggestions", "redFlags", "referralRecommendation", ...}`` with
  probabilities expressed as percentages.

Both are folded into the analysis shape first, then mapped. Normalization
never fails on missing optional fields; each one has a default.
"""

import logging
import math
from typing import Any

from caseflow.models.analysis import (
    DISCLAIMER,
    DifferentialDiagnosis,
    NormalizedAnalysis,
    RawAnalysisResponse,
    RecommendedTest,
    RedFlag,
    ReferralRecommendation,
    TherapeuticOption,
)

logger = logging.getLogger(__name__)

_TEST_PRIORITY = {
    "high": "urgent",
    "urgent": "urgent",
    "medium": "routine",
    "routine": "routine",
    "low": "optional",
    "optional": "optional",
}

_UPSTREAM_PRIORITY = {"urgent": "high", "routine": "medium", "optional": "low"}

_RED_FLAG_SEVERITIES = {"low", "medium", "high", "critical"}


def _as_list(value: object) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _as_str(value: object, default: str = "") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def to_unit_interval(value: object) -> float:
    """Coerce a confidence to [0, 1]; values above 1 are read as percentages."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    if number > 1.0:
        number = number / 100.0
    return max(0.0, min(1.0, number))


def to_percent(confidence: float) -> int:
    """Round half up, so 0.125 -> 13 rather than banker's rounding."""
    return max(0, min(100, math.floor(confidence * 100 + 0.5)))


def severity_for(confidence: float) -> str:
    if confidence > 0.7:
        return "high"
    if confidence > 0.4:
        return "medium"
    return "low"


def map_test_priority(priority: object) -> str:
    return _TEST_PRIORITY.get(_as_str(priority).lower(), "routine")


def _from_diagnostic_result(result: dict) -> dict:
    """Fold the older diagnostic-result shape into the analysis shape."""
    diagnoses = _as_list(result.get("diagnoses"))
    primary = diagnoses[0] if diagnoses else {}

    def _dx(item: dict) -> dict:
        return {
            "condition": item.get("condition"),
            "confidence": to_unit_interval(item.get("probability")),
            "reasoning": item.get("reasoning"),
        }

    follow_ups = []
    referral = result.get("referralRecommendation")
    if isinstance(referral, dict) and referral.get("recommended"):
        follow_ups.append({
            "action": f"Refer to {_as_str(referral.get('specialty'), 'specialist')}",
            "timeframe": _as_str(referral.get("urgency"), "routine"),
            "reasoning": _as_str(referral.get("reason")),
        })
    if result.get("followUpRequired"):
        follow_ups.append({
            "action": "Schedule follow-up appointment to monitor progress and treatment response",
            "timeframe": "1-2 weeks",
            "reasoning": "",
        })

    treatments = []
    for med in _as_list(result.get("medicationSuggestions")):
        parts = [_as_str(med.get(k)) for k in ("drugName", "dosage", "frequency")]
        treatments.append({
            "treatment": " ".join(p for p in parts if p) or "Unknown treatment",
            "reasoning": med.get("reasoning"),
        })

    return {
        "primaryDiagnosis": _dx(primary) if primary else None,
        "differentialDiagnoses": [_dx(d) for d in diagnoses[1:]],
        "recommendedTests": [
            {
                "test": t.get("testName"),
                "priority": _UPSTREAM_PRIORITY.get(_as_str(t.get("priority")).lower(), t.get("priority")),
                "reasoning": t.get("reasoning"),
            }
            for t in _as_list(result.get("suggestedTests"))
        ],
        "treatmentSuggestions": treatments,
        "riskFactors": [
            {
                "factor": f.get("flag"),
                "severity": f.get("severity"),
                "description": f.get("action") or f.get("clinicalRationale"),
            }
            for f in _as_list(result.get("redFlags"))
        ],
        "followUpRecommendations": follow_ups,
    }


def _overall_confidence(payload: dict, primary: dict | None) -> float:
    metadata = payload.get("aiMetadata")
    if not isinstance(metadata, dict):
        metadata = {}
    for value in (payload.get("confidence"), payload.get("confidenceScore"), metadata.get("confidenceScore")):
        if value is not None:
            return to_unit_interval(value)
    if primary:
        return to_unit_interval(primary.get("confidence"))
    return 0.0


def _diagnosis(item: dict | None) -> DifferentialDiagnosis:
    item = item or {}
    confidence = to_unit_interval(item.get("confidence", item.get("probability")))
    return DifferentialDiagnosis(
        condition=_as_str(item.get("condition"), "Unknown"),
        probability=to_percent(confidence),
        reasoning=_as_str(item.get("reasoning")),
        severity=severity_for(confidence),
    )


def _referral(follow_ups: list[dict]) -> ReferralRecommendation | None:
    if not follow_ups:
        return None
    first = follow_ups[0]
    return ReferralRecommendation(
        recommended=True,
        urgency="routine",
        specialty="General practice",
        reason=_as_str(first.get("reasoning")) or _as_str(first.get("action")) or "Follow-up recommended",
    )


def normalize(raw: RawAnalysisResponse | dict | None, case_id: str | None = None) -> NormalizedAnalysis:
    """Map an upstream payload to the stable internal schema. Total over any dict."""
    if isinstance(raw, RawAnalysisResponse):
        payload = raw.model_dump(by_alias=True, exclude_none=True)
    elif isinstance(raw, dict):
        payload = dict(raw)
    else:
        payload = {}

    body = payload.get("analysis")
    if not isinstance(body, dict):
        body = payload
    if "diagnoses" in body and "primaryDiagnosis" not in body:
        body = _from_diagnostic_result(body)

    primary_raw = body.get("primaryDiagnosis") if isinstance(body.get("primaryDiagnosis"), dict) else None
    differentials = [_diagnosis(primary_raw)]
    differentials.extend(_diagnosis(d) for d in _as_list(body.get("differentialDiagnoses")))

    tests = [
        RecommendedTest(
            test_name=_as_str(t.get("test") or t.get("testName"), "Unknown test"),
            priority=map_test_priority(t.get("priority")),
            reasoning=_as_str(t.get("reasoning")),
        )
        for t in _as_list(body.get("recommendedTests"))
    ]

    options = [
        TherapeuticOption(
            medication=_as_str(o.get("treatment") or o.get("medication"), "Unknown"),
            reasoning=_as_str(o.get("reasoning")),
        )
        for o in _as_list(body.get("treatmentSuggestions") or body.get("therapeuticOptions"))
    ]

    flags = []
    for rf in _as_list(body.get("riskFactors")):
        severity = _as_str(rf.get("severity"), "medium").lower()
        flags.append(RedFlag(
            flag=_as_str(rf.get("factor"), "Risk factor"),
            severity=severity if severity in _RED_FLAG_SEVERITIES else "medium",
            action=_as_str(rf.get("description")),
        ))

    processing_time = payload.get("processingTime")
    try:
        processing_ms = max(0.0, float(processing_time)) if processing_time is not None else 0.0
    except (TypeError, ValueError):
        processing_ms = 0.0

    resolved_id = case_id or _as_str(payload.get("caseId")) or _as_str(payload.get("id"))
    if primary_raw is None:
        logger.debug("Analysis %s has no primary diagnosis; using default", resolved_id or "<unknown>")

    return NormalizedAnalysis(
        case_id=resolved_id,
        differential_diagnoses=differentials,
        recommended_tests=tests,
        therapeutic_options=options,
        red_flags=flags,
        referral_recommendation=_referral(_as_list(body.get("followUpRecommendations"))),
        disclaimer=DISCLAIMER,
        confidence_score=to_percent(_overall_confidence(payload, primary_raw)),
        processing_time_ms=processing_ms,
    )
