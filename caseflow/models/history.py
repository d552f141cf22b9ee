from typing import Any

from pydantic import AliasChoices, Field

from caseflow.models.analysis import SymptomSnapshot
from caseflow.models.draft import CamelModel, VitalSigns


class ReviewerDecision(CamelModel):
    accepted: bool | None = None
    modifications: str | None = None
    final_recommendation: str | None = None
    notes: str | None = None
    reviewed_at: str | None = None


class HistoryRecord(CamelModel):
    """A completed case as stored server-side.

    Immutable apart from the reviewer decision, which may be attached later.
    """

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    case_id: str = ""
    created_at: str = ""
    status: str = "completed"
    symptoms: SymptomSnapshot | None = None
    vital_signs: VitalSigns | None = None
    ai_analysis: dict[str, Any] | None = None
    pharmacist_decision: ReviewerDecision | None = None
    processing_time: float = 0


class HistoryPage(CamelModel):
    items: list[HistoryRecord] = []
    page: int = 1
    limit: int = 10
    total: int = 0
    pages: int = 0
