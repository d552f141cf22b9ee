from enum import Enum

from caseflow.models.analysis import NormalizedAnalysis
from caseflow.models.draft import CamelModel, CaseDraft
from caseflow.models.history import HistoryRecord
from caseflow.models.validation import ValidationReport


class WorkflowState(str, Enum):
    IDLE = "idle"
    EDITING = "editing"
    SUBMITTING = "submitting"
    POLLING = "polling"
    NORMALIZING = "normalizing"
    REVIEWED = "reviewed"
    ERROR = "error"


IN_FLIGHT_STATES = frozenset({
    WorkflowState.SUBMITTING,
    WorkflowState.POLLING,
    WorkflowState.NORMALIZING,
})


class WorkflowError(CamelModel):
    stage: WorkflowState
    message: str
    request_id: str | None = None
    retryable_poll: bool = False


class WorkflowSnapshot(CamelModel):
    state: WorkflowState
    patient_id: str | None = None
    draft: CaseDraft
    report: ValidationReport
    analysis: NormalizedAnalysis | None = None
    error: WorkflowError | None = None
    consent_granted: bool = False
    consent_requested: bool = False
    request_id: str | None = None
    history: list[HistoryRecord] = []
    history_page: int = 0
    history_total: int = 0
