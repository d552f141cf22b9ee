"""Intake form validation.

Maps the current draft plus the set of fields the user has interacted with
to a ValidationReport. Two hard gates (patient selected, one usable
subjective symptom) are always enforced; every other rule only applies once
its field has been touched and holds a value.
"""

import re
from collections.abc import Iterable

from caseflow.models.draft import CaseDraft, VitalSigns
from caseflow.models.validation import ValidationIssue, ValidationReport

TOTAL_SECTIONS = 6
MIN_SYMPTOM_LENGTH = 3
MAX_DURATION_LENGTH = 100

_BP_PATTERN = re.compile(r"^\d{2,3}/\d{2,3}$|^\d{2,3}$|^\d{2,3}/\d{2,3}\s*mmHg$")
_DURATION_PATTERN = re.compile(r"\d+\s*(day|week|month|year|hour|minute|second)", re.IGNORECASE)

# field name -> (attribute, low, high, message)
_VITAL_RANGES = (
    ("heartRate", "heart_rate", 30, 250, "Heart rate must be between 30-250 bpm"),
    ("temperature", "temperature", 30, 45, "Temperature must be between 30-45°C"),
    ("respiratoryRate", "respiratory_rate", 5, 100, "Respiratory rate must be between 5-100 breaths/min"),
    ("oxygenSaturation", "oxygen_saturation", 50, 100, "Oxygen saturation must be between 50-100%"),
)


def validate_blood_pressure(bp: str | None) -> str | None:
    if not bp:
        return None
    if not _BP_PATTERN.match(bp):
        return "Invalid format. Use: 120/80, 120, or 120/80 mmHg"
    return None


def validate_range(value: float | None, low: float, high: float, message: str) -> str | None:
    if not value:
        return None
    if value < low or value > high:
        return message
    return None


def validate_duration(duration: str | None) -> str | None:
    if not duration:
        return None
    if len(duration) > MAX_DURATION_LENGTH:
        return f"Duration must be between 1-{MAX_DURATION_LENGTH} characters"
    if not _DURATION_PATTERN.search(duration):
        return 'Duration should include number and time unit (e.g., "3 days", "2 weeks")'
    return None


def validate_symptom_text(text: str | None) -> str | None:
    if not text:
        return "Symptom description is required"
    if len(text) < MIN_SYMPTOM_LENGTH:
        return f"Symptom description must be at least {MIN_SYMPTOM_LENGTH} characters"
    return None


def _validate_vitals(vitals: VitalSigns, touched: frozenset[str]) -> list[ValidationIssue]:
    issues = []
    if "bloodPressure" in touched:
        error = validate_blood_pressure(vitals.blood_pressure)
        if error:
            issues.append(ValidationIssue(field="bloodPressure", message=error))
    for field, attr, low, high, message in _VITAL_RANGES:
        if field not in touched:
            continue
        error = validate_range(getattr(vitals, attr), low, high, message)
        if error:
            issues.append(ValidationIssue(field=field, message=error))
    return issues


def validate(draft: CaseDraft, touched_fields: Iterable[str] = ()) -> ValidationReport:
    """Build the validation report for a draft. Pure and deterministic."""
    touched = frozenset(touched_fields)
    errors: list[ValidationIssue] = []
    completed = 0

    # 1. Patient
    has_patient = bool(draft.patient_id)
    if has_patient:
        completed += 1
    else:
        errors.append(ValidationIssue(field="patient", message="Patient selection is required"))

    # 2. Symptoms
    usable_subjective = [
        s for s in draft.symptoms
        if s.kind == "subjective" and len(s.text.strip()) >= MIN_SYMPTOM_LENGTH
    ]
    if usable_subjective:
        completed += 1
    else:
        errors.append(ValidationIssue(
            field="symptoms",
            message="At least one subjective symptom (3+ characters) is required",
        ))

    for index, symptom in enumerate(draft.symptoms):
        field = f"symptom-{index}"
        if symptom.text and field in touched:
            error = validate_symptom_text(symptom.text)
            if error:
                errors.append(ValidationIssue(field=field, message=error))

    # 3. Clinical details
    clinical_ok = True
    if "duration" in touched:
        error = validate_duration(draft.duration)
        if error:
            errors.append(ValidationIssue(field="duration", message=error))
            clinical_ok = False
    if clinical_ok:
        completed += 1

    # 4. Vital signs
    vital_issues = _validate_vitals(draft.vital_signs, touched)
    errors.extend(vital_issues)
    if not vital_issues:
        completed += 1

    # 5. Labs and 6. medications carry no rules yet
    completed += 2

    return ValidationReport(
        errors=errors,
        completed_sections=completed,
        total_sections=TOTAL_SECTIONS,
        is_valid=not errors and has_patient and bool(usable_subjective),
    )
