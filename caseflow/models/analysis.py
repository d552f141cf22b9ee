from typing import Any, Literal

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from caseflow.models.draft import CamelModel, Medication, Onset, Severity, VitalSigns

DISCLAIMER = (
    "This AI-generated clinical support does not replace professional judgment. "
    "Verify findings and follow local protocols."
)


class SymptomSnapshot(CamelModel):
    subjective: list[str] = []
    objective: list[str] = []
    duration: str = ""
    severity: Severity = "mild"
    onset: Onset = "acute"


class InputSnapshot(CamelModel):
    symptoms: SymptomSnapshot = Field(default_factory=SymptomSnapshot)
    vitals: VitalSigns = Field(default_factory=VitalSigns)
    current_medications: list[Medication] = []
    allergies: list[str] = []
    medical_history: list[str] = []
    lab_result_ids: list[str] = []


class AnalysisRequest(CamelModel):
    """Outbound case payload. Immutable once built."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    patient_id: str
    input_snapshot: InputSnapshot
    priority: Literal["routine", "urgent"] = "routine"
    consent_obtained: bool = False


class RawAnalysisResponse(CamelModel):
    """Upstream analysis payload as returned by the diagnostics API.

    The shape varies between service versions, so unknown keys are kept
    and every field is optional.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str | None = None
    case_id: str | None = None
    status: str | None = None
    analysis: dict[str, Any] | None = None
    confidence: float | None = None
    processing_time: float | None = None


class DifferentialDiagnosis(CamelModel):
    condition: str = "Unknown"
    probability: int = Field(0, ge=0, le=100)
    reasoning: str = ""
    severity: Literal["low", "medium", "high"] = "low"


class RecommendedTest(CamelModel):
    test_name: str = "Unknown test"
    priority: Literal["urgent", "routine", "optional"] = "routine"
    reasoning: str = ""


class TherapeuticOption(CamelModel):
    medication: str = "Unknown"
    dosage: str = ""
    frequency: str = ""
    duration: str = ""
    reasoning: str = ""
    safety_notes: list[str] = []


class RedFlag(CamelModel):
    flag: str = "Risk factor"
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    action: str = ""


class ReferralRecommendation(CamelModel):
    recommended: bool = True
    urgency: Literal["immediate", "within_24h", "routine"] = "routine"
    specialty: str = "General practice"
    reason: str = ""


class NormalizedAnalysis(CamelModel):
    case_id: str = ""
    differential_diagnoses: list[DifferentialDiagnosis] = []
    recommended_tests: list[RecommendedTest] = []
    therapeutic_options: list[TherapeuticOption] = []
    red_flags: list[RedFlag] = []
    referral_recommendation: ReferralRecommendation | None = None
    disclaimer: str = DISCLAIMER
    confidence_score: int = Field(0, ge=0, le=100)
    processing_time_ms: float = 0

    @property
    def primary(self) -> DifferentialDiagnosis | None:
        return self.differential_diagnoses[0] if self.differential_diagnoses else None
