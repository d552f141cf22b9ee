"""Tests for mapping upstream analysis payloads to NormalizedAnalysis."""

from caseflow.models.analysis import DISCLAIMER, RawAnalysisResponse
from caseflow.services.normalizer import (
    map_test_priority,
    normalize,
    severity_for,
    to_percent,
    to_unit_interval,
)


def _payload(**analysis) -> dict:
    return {"id": "r1", "analysis": analysis, "confidence": 0.85, "processingTime": 4200}


class TestConfidenceHelpers:
    def test_severity_boundaries(self):
        assert severity_for(0.71) == "high"
        assert severity_for(0.70) == "medium"
        assert severity_for(0.41) == "medium"
        assert severity_for(0.40) == "low"
        assert severity_for(0.39) == "low"

    def test_percent_rounds_half_up(self):
        assert to_percent(0.85) == 85
        assert to_percent(0.125) == 13
        assert to_percent(0.0) == 0
        assert to_percent(1.0) == 100

    def test_unit_interval(self):
        assert to_unit_interval(0.5) == 0.5
        assert to_unit_interval(85) == 0.85
        assert to_unit_interval(-1) == 0.0
        assert to_unit_interval(None) == 0.0
        assert to_unit_interval("n/a") == 0.0

    def test_test_priority_mapping(self):
        assert map_test_priority("high") == "urgent"
        assert map_test_priority("low") == "optional"
        assert map_test_priority("medium") == "routine"
        assert map_test_priority(None) == "routine"
        assert map_test_priority("whenever") == "routine"


class TestNormalize:
    def test_primary_diagnosis_first(self):
        result = normalize(_payload(
            primaryDiagnosis={"condition": "URTI", "confidence": 0.85, "reasoning": "cough"},
            differentialDiagnoses=[{"condition": "Influenza", "confidence": 0.55}],
        ))
        assert [d.condition for d in result.differential_diagnoses] == ["URTI", "Influenza"]
        primary = result.primary
        assert primary.probability == 85
        assert primary.severity == "high"
        assert result.differential_diagnoses[1].severity == "medium"

    def test_overall_confidence_and_timing(self):
        result = normalize(_payload(primaryDiagnosis={"condition": "URTI", "confidence": 0.6}))
        assert result.confidence_score == 85
        assert result.processing_time_ms == 4200
        assert result.case_id == "r1"

    def test_explicit_case_id_wins(self):
        assert normalize(_payload(), case_id="c9").case_id == "c9"

    def test_empty_payload_uses_defaults(self):
        result = normalize({})
        assert len(result.differential_diagnoses) == 1
        assert result.primary.condition == "Unknown"
        assert result.primary.probability == 0
        assert result.primary.severity == "low"
        assert result.recommended_tests == []
        assert result.therapeutic_options == []
        assert result.red_flags == []
        assert result.referral_recommendation is None
        assert result.confidence_score == 0
        assert result.disclaimer == DISCLAIMER

    def test_none_payload(self):
        assert normalize(None).primary.condition == "Unknown"

    def test_malformed_sections_are_ignored(self):
        result = normalize({"analysis": {
            "primaryDiagnosis": "not a dict",
            "recommendedTests": "nope",
            "riskFactors": [None, 3, {"factor": "Smoker", "severity": "extreme"}],
        }})
        assert result.primary.condition == "Unknown"
        assert result.recommended_tests == []
        assert len(result.red_flags) == 1
        assert result.red_flags[0].severity == "medium"

    def test_tests_treatments_and_risks(self):
        result = normalize(_payload(
            recommendedTests=[
                {"test": "ECG", "priority": "high", "reasoning": "rule out ischaemia"},
                {"test": "FBC", "priority": "low"},
            ],
            treatmentSuggestions=[{"treatment": "Paracetamol 1 g", "reasoning": "analgesia"}],
            riskFactors=[{"factor": "Low SpO2", "severity": "high", "description": "Refer today"}],
        ))
        assert [(t.test_name, t.priority) for t in result.recommended_tests] == [
            ("ECG", "urgent"), ("FBC", "optional"),
        ]
        assert result.therapeutic_options[0].medication == "Paracetamol 1 g"
        assert result.therapeutic_options[0].dosage == ""
        flag = result.red_flags[0]
        assert (flag.flag, flag.severity, flag.action) == ("Low SpO2", "high", "Refer today")

    def test_referral_from_first_follow_up(self):
        result = normalize(_payload(followUpRecommendations=[
            {"action": "Review with GP", "timeframe": "1 week", "reasoning": "Persistent cough"},
            {"action": "Chest X-ray", "reasoning": "If worse"},
        ]))
        referral = result.referral_recommendation
        assert referral.recommended is True
        assert referral.urgency == "routine"
        assert referral.specialty == "General practice"
        assert referral.reason == "Persistent cough"

    def test_accepts_raw_response_model(self):
        raw = RawAnalysisResponse.model_validate(_payload(primaryDiagnosis={"condition": "URTI", "confidence": 0.3}))
        result = normalize(raw)
        assert result.primary.severity == "low"
        assert result.primary.probability == 30

    def test_confidence_falls_back_to_primary(self):
        result = normalize({"analysis": {"primaryDiagnosis": {"condition": "URTI", "confidence": 0.42}}})
        assert result.confidence_score == 42


class TestDiagnosticResultShape:
    def test_folds_older_shape(self):
        result = normalize({
            "id": "r2",
            "diagnoses": [
                {"condition": "Otitis media", "probability": 78, "reasoning": "Ear pain"},
                {"condition": "Otitis externa", "probability": 35},
            ],
            "suggestedTests": [{"testName": "Otoscopy", "priority": "urgent"}],
            "medicationSuggestions": [{"drugName": "Amoxicillin", "dosage": "500 mg", "frequency": "TDS"}],
            "redFlags": [{"flag": "Mastoid swelling", "severity": "critical", "action": "Same-day referral"}],
            "referralRecommendation": {"recommended": True, "specialty": "ENT", "reason": "Recurrent"},
            "aiMetadata": {"confidenceScore": 0.78},
        })
        assert result.primary.condition == "Otitis media"
        assert result.primary.probability == 78
        assert result.primary.severity == "high"
        assert result.differential_diagnoses[1].severity == "low"
        assert result.recommended_tests[0].priority == "urgent"
        assert result.therapeutic_options[0].medication == "Amoxicillin 500 mg TDS"
        assert result.red_flags[0].severity == "critical"
        assert result.referral_recommendation.reason == "Recurrent"
        assert result.confidence_score == 78
