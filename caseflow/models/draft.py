from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SymptomKind = Literal["subjective", "objective"]
Severity = Literal["mild", "moderate", "severe"]
Onset = Literal["acute", "chronic", "subacute"]


class CamelModel(BaseModel):
    """Base for models exchanged with the browser and the diagnostics API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Symptom(CamelModel):
    kind: SymptomKind = "subjective"
    text: str = ""


class VitalSigns(CamelModel):
    blood_pressure: str | None = None       # "120/80", "120" or "120/80 mmHg"
    heart_rate: float | None = None         # bpm
    temperature: float | None = None        # °C
    respiratory_rate: float | None = None   # breaths/min
    oxygen_saturation: float | None = None  # %
    blood_glucose: float | None = None      # mg/dL


class Medication(CamelModel):
    name: str = ""
    dosage: str = ""
    frequency: str = ""


class CaseDraft(CamelModel):
    patient_id: str | None = None
    symptoms: list[Symptom] = Field(default_factory=lambda: [Symptom()])
    vital_signs: VitalSigns = Field(default_factory=VitalSigns)
    duration: str = ""
    severity: Severity = "mild"
    onset: Onset = "acute"
    current_medications: list[Medication] = []
    allergies: list[str] = []
    medical_history: list[str] = []
    lab_results: list[str] = []
    saved_at: int | None = None

    def subjective(self) -> list[str]:
        return [s.text for s in self.symptoms if s.kind == "subjective" and s.text]

    def objective(self) -> list[str]:
        return [s.text for s in self.symptoms if s.kind == "objective" and s.text]
