"""Case intake workflow controller.

Drives one pharmacist's intake session through

    idle -> editing -> submitting -> polling -> normalizing -> reviewed
                           \\            |            /
                            +-------> error <------+

Everything except network I/O and the autosave timer runs synchronously, so
state observed between awaits is always consistent. Work started for one
patient is tagged with that patient's session; when the pharmacist switches
patient the old session is cancelled and any late result is dropped.
"""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from caseflow.cache import ANALYSIS_NAMESPACE, DRAFT_NAMESPACE, DurableCache
from caseflow.config import DRAFT_DEBOUNCE_SECONDS, POLL_MAX_ATTEMPTS
from caseflow.errors import (
    AnalysisError,
    ConsentRequired,
    PollCancelledError,
    PollTimeoutError,
    SubmissionError,
)
from caseflow.models.analysis import AnalysisRequest, InputSnapshot, NormalizedAnalysis, SymptomSnapshot
from caseflow.models.draft import CaseDraft, Symptom, SymptomKind, VitalSigns
from caseflow.models.validation import ValidationReport
from caseflow.models.workflow import IN_FLIGHT_STATES, WorkflowError, WorkflowSnapshot, WorkflowState
from caseflow.services.analysis_client import AnalysisClient
from caseflow.services.event_bus import WorkflowEventBus
from caseflow.services.history import HistoryAggregator
from caseflow.services.normalizer import normalize
from caseflow.services.validation import validate

logger = logging.getLogger(__name__)

# Draft fields editable through update_draft(); patient, symptoms and vitals
# have dedicated operations.
EDITABLE_DRAFT_FIELDS = {
    "duration",
    "severity",
    "onset",
    "current_medications",
    "allergies",
    "medical_history",
    "lab_results",
}

# Error must be cleared with retry() before a new submission
SUBMITTABLE_STATES = {WorkflowState.EDITING, WorkflowState.REVIEWED}


@dataclass
class _Session:
    patient_id: str | None
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)


def _by_field_name(model: type[BaseModel], changes: dict[str, Any]) -> dict[str, Any]:
    """Accept camelCase aliases as well as field names."""
    names = {info.alias: name for name, info in model.model_fields.items() if info.alias}
    return {names.get(key, key): value for key, value in changes.items()}


def build_request(draft: CaseDraft, consent: bool) -> AnalysisRequest:
    return AnalysisRequest(
        patient_id=draft.patient_id or "",
        input_snapshot=InputSnapshot(
            symptoms=SymptomSnapshot(
                subjective=draft.subjective(),
                objective=draft.objective(),
                duration=draft.duration,
                severity=draft.severity,
                onset=draft.onset,
            ),
            vitals=draft.vital_signs,
            current_medications=[m for m in draft.current_medications if m.name and m.dosage],
            allergies=draft.allergies,
            medical_history=draft.medical_history,
            lab_result_ids=draft.lab_results,
        ),
        consent_obtained=consent,
    )


class CaseWorkflowController:
    def __init__(
        self,
        analysis_client: AnalysisClient,
        history: HistoryAggregator,
        cache: DurableCache,
        event_bus: WorkflowEventBus | None = None,
        debounce_seconds: float = DRAFT_DEBOUNCE_SECONDS,
        max_poll_attempts: int = POLL_MAX_ATTEMPTS,
    ) -> None:
        self.analysis_client = analysis_client
        self.history = history
        self.cache = cache
        self.event_bus = event_bus or WorkflowEventBus()
        self.debounce_seconds = debounce_seconds
        self.max_poll_attempts = max_poll_attempts

        self.state = WorkflowState.IDLE
        self.patient_id: str | None = None
        self.draft = CaseDraft()
        self.touched: set[str] = set()
        self.report: ValidationReport = validate(self.draft, self.touched)
        self.analysis: NormalizedAnalysis | None = None
        self.error: WorkflowError | None = None
        self.request_id: str | None = None
        self.consent_granted = False
        self.consent_requested = False
        self.history_error: str | None = None

        self._session = _Session(patient_id=None)
        self._draft_timer: asyncio.TimerHandle | None = None
        self._parked_draft: CaseDraft | None = None
        self._tasks: set[asyncio.Task] = set()

    # -- observation -------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self.state in IN_FLIGHT_STATES

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            state=self.state,
            patient_id=self.patient_id,
            draft=self.draft,
            report=self.report,
            analysis=self.analysis,
            error=self.error,
            consent_granted=self.consent_granted,
            consent_requested=self.consent_requested,
            request_id=self.request_id,
            history=self.history.records,
            history_page=self.history.page,
            history_total=self.history.total,
        )

    def _publish(self, event_type: str, **data: Any) -> None:
        self.event_bus.publish(self.patient_id, {"type": event_type, "state": self.state.value, **data})

    def _set_state(self, state: WorkflowState) -> None:
        if state is self.state:
            return
        logger.debug("Workflow %s: %s -> %s", self.patient_id, self.state.value, state.value)
        self.state = state
        self._publish("state")

    def _is_current(self, session: _Session) -> bool:
        return session is self._session and not session.cancel.is_set()

    # -- patient selection ---------------------------------------------------

    async def select_patient(self, patient_id: str | None) -> WorkflowSnapshot:
        """Switch the active patient, discarding in-memory work for the previous one."""
        self._cancel_draft_timer()
        self._cancel_session()
        session = self._session = _Session(patient_id=patient_id)

        self.patient_id = patient_id
        self.touched = set()
        self.error = None
        self.request_id = None
        self.consent_granted = False
        self.consent_requested = False
        self.history_error = None
        self._parked_draft = None
        self.history.reset(patient_id)

        if not patient_id:
            self.draft = CaseDraft()
            self.analysis = None
            self.report = validate(self.draft, self.touched)
            self._set_state(WorkflowState.IDLE)
            return self.snapshot()

        self.draft = self._load_draft(patient_id)
        self.analysis = self._load_analysis(patient_id)
        self.report = validate(self.draft, self.touched)
        self._set_state(WorkflowState.EDITING)
        self._publish("patient_selected")

        await self._refresh_history(session)
        return self.snapshot()

    def _load_draft(self, patient_id: str) -> CaseDraft:
        entry = self.cache.get_entry(DRAFT_NAMESPACE, patient_id)
        if entry is None or not isinstance(entry.value, dict):
            return CaseDraft(patient_id=patient_id)
        try:
            draft = CaseDraft.model_validate({**entry.value, "patientId": patient_id, "savedAt": entry.saved_at})
        except ValidationError as e:
            logger.warning("Ignoring unreadable cached draft for %s: %s", patient_id, e)
            return CaseDraft(patient_id=patient_id)
        logger.info("Restored draft for patient %s", patient_id)
        return draft

    def _load_analysis(self, patient_id: str) -> NormalizedAnalysis | None:
        value = self.cache.get(ANALYSIS_NAMESPACE, patient_id)
        if value is None:
            return None
        try:
            return NormalizedAnalysis.model_validate(value)
        except ValidationError as e:
            logger.warning("Ignoring unreadable cached analysis for %s: %s", patient_id, e)
            return None

    async def _refresh_history(self, session: _Session) -> None:
        patient_id = session.patient_id
        if not patient_id:
            return
        try:
            await self.history.fetch_page(patient_id, 1)
        except (httpx.HTTPError, ValueError) as e:
            if self._is_current(session):
                self.history_error = "Failed to load diagnostic history"
            logger.warning("History fetch for %s failed: %s", patient_id, e)
            return
        if not self._is_current(session):
            logger.debug("Dropping history for %s; session moved on", patient_id)
            return
        hydrated = self.history.hydrate(patient_id, self.analysis, self.cache)
        if hydrated is not None:
            self.analysis = hydrated
            self._publish("analysis", case_id=hydrated.case_id, source="history")
        self._publish("history", total=self.history.total)

    async def load_more_history(self) -> WorkflowSnapshot:
        session = self._session
        try:
            await self.history.load_more()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Loading more history for %s failed: %s", session.patient_id, e)
            if self._is_current(session):
                self.history_error = "Failed to load diagnostic history"
        return self.snapshot()

    async def attach_note(self, case_id: str, notes: str) -> bool:
        ok = await self.history.attach_note(case_id, notes)
        if ok:
            self._publish("note_saved", case_id=case_id)
        return ok

    # -- editing ---------------------------------------------------------------

    def _edit(self, draft: CaseDraft) -> ValidationReport:
        if self.busy:
            logger.warning("Ignoring edit while %s is in progress", self.state.value)
            return self.report
        self.draft = draft
        self._on_change()
        return self.report

    def update_draft(self, **changes: Any) -> ValidationReport:
        changes = _by_field_name(CaseDraft, changes)
        unknown = set(changes) - EDITABLE_DRAFT_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable here: {', '.join(sorted(unknown))}")
        draft = CaseDraft.model_validate({**self.draft.model_dump(), **changes})
        return self._edit(draft)

    def update_vitals(self, **changes: Any) -> ValidationReport:
        changes = _by_field_name(VitalSigns, changes)
        unknown = set(changes) - set(VitalSigns.model_fields)
        if unknown:
            raise ValueError(f"Unknown vital signs: {', '.join(sorted(unknown))}")
        vitals = VitalSigns.model_validate({**self.draft.vital_signs.model_dump(), **changes})
        return self._edit(self.draft.model_copy(update={"vital_signs": vitals}))

    def add_symptom(self, kind: SymptomKind = "subjective", text: str = "") -> ValidationReport:
        symptoms = [*self.draft.symptoms, Symptom(kind=kind, text=text)]
        return self._edit(self.draft.model_copy(update={"symptoms": symptoms}))

    def update_symptom(self, index: int, text: str) -> ValidationReport:
        symptoms = list(self.draft.symptoms)
        symptoms[index] = symptoms[index].model_copy(update={"text": text})
        return self._edit(self.draft.model_copy(update={"symptoms": symptoms}))

    def remove_symptom(self, index: int) -> ValidationReport:
        symptoms = list(self.draft.symptoms)
        del symptoms[index]
        return self._edit(self.draft.model_copy(update={"symptoms": symptoms}))

    def touch(self, *fields: str) -> ValidationReport:
        """Mark fields as interacted with so their soft rules apply."""
        self.touched.update(fields)
        self.report = validate(self.draft, self.touched)
        return self.report

    def _on_change(self) -> None:
        self.report = validate(self.draft, self.touched)
        if self.state is WorkflowState.REVIEWED:
            self._set_state(WorkflowState.EDITING)
        self._schedule_draft_write()
        self._publish("draft_changed", is_valid=self.report.is_valid)

    # -- draft autosave ----------------------------------------------------------

    def _schedule_draft_write(self) -> None:
        self._cancel_draft_timer()
        if not self.patient_id:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; draft autosave skipped")
            return
        self._draft_timer = loop.call_later(self.debounce_seconds, self._write_draft, self._session.token)

    def _cancel_draft_timer(self) -> None:
        if self._draft_timer is not None:
            self._draft_timer.cancel()
            self._draft_timer = None

    def _write_draft(self, token: str) -> None:
        self._draft_timer = None
        if token != self._session.token or not self.patient_id or self.busy:
            return
        value = self.draft.model_dump(mode="json", by_alias=True, exclude={"patient_id", "saved_at"})
        if self.cache.put(DRAFT_NAMESPACE, self.patient_id, value):
            entry = self.cache.get_entry(DRAFT_NAMESPACE, self.patient_id)
            if entry is not None:
                self.draft.saved_at = entry.saved_at
            self._publish("draft_saved")

    # -- submission ----------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Workflow task failed: %s", exc, exc_info=exc)

    def _require_consent(self) -> None:
        if not self.consent_granted:
            raise ConsentRequired("Patient consent is required before AI analysis")

    def _prepare_submission(self) -> AnalysisRequest | None:
        if self.busy:
            logger.warning("Submission for %s already in progress", self.patient_id)
            return None
        if self.state not in SUBMITTABLE_STATES:
            logger.info("Not submitting from %s; retry first", self.state.value)
            return None
        self.report = validate(self.draft, self.touched)
        if not self.report.is_valid:
            logger.info("Submission blocked by %d validation error(s)", len(self.report.errors))
            return None
        try:
            self._require_consent()
        except ConsentRequired:
            # Park a copy of the draft and resume once consent is granted
            self._parked_draft = self.draft.model_copy(deep=True)
            self.consent_requested = True
            self._publish("consent_required")
            return None
        return build_request(self.draft, consent=True)

    def _begin(self) -> _Session:
        self._cancel_draft_timer()
        self.error = None
        self.request_id = None
        self._set_state(WorkflowState.SUBMITTING)
        return self._session

    async def _dispatch(self, coro: Coroutine[Any, Any, None], wait: bool) -> WorkflowSnapshot:
        if wait:
            await coro
        else:
            self._spawn(coro)
        return self.snapshot()

    async def submit(self, wait: bool = True) -> WorkflowSnapshot:
        """Submit the current draft for analysis.

        With wait=False the network work continues in a background task and
        the snapshot reflects the submitting state.
        """
        request = self._prepare_submission()
        if request is None:
            return self.snapshot()
        session = self._begin()
        return await self._dispatch(self._run(request, session), wait)

    async def grant_consent(self, wait: bool = True) -> WorkflowSnapshot:
        """Record consent and resume a submission parked for it."""
        self.consent_granted = True
        self.consent_requested = False
        parked, self._parked_draft = self._parked_draft, None
        if parked is None or parked.patient_id != self.patient_id or self.busy:
            return self.snapshot()
        logger.info("Consent granted for %s; resuming submission", self.patient_id)
        request = build_request(parked, consent=True)
        session = self._begin()
        return await self._dispatch(self._run(request, session), wait)

    async def repoll(self, wait: bool = True) -> WorkflowSnapshot:
        """Resume polling a request that timed out, without resubmitting."""
        error = self.error
        if self.state is not WorkflowState.ERROR or error is None or not error.retryable_poll or not error.request_id:
            return self.snapshot()
        request_id = error.request_id
        self.error = None
        self.request_id = request_id
        session = self._session
        self._set_state(WorkflowState.POLLING)
        return await self._dispatch(self._poll_and_normalize(request_id, session), wait)

    def retry(self) -> WorkflowSnapshot:
        """Leave the error state; the draft is kept for resubmission."""
        if self.state is WorkflowState.ERROR:
            self.error = None
            self.report = validate(self.draft, self.touched)
            self._set_state(WorkflowState.EDITING)
        return self.snapshot()

    async def _run(self, request: AnalysisRequest, session: _Session) -> None:
        try:
            request_id = await self.analysis_client.submit(request)
        except SubmissionError as e:
            self._fail(session, WorkflowState.SUBMITTING, e.message)
            return
        if not self._is_current(session):
            logger.info("Dropping submission result for %s; session moved on", session.patient_id)
            return
        self.request_id = request_id
        self._set_state(WorkflowState.POLLING)
        await self._poll_and_normalize(request_id, session)

    async def _poll_and_normalize(self, request_id: str, session: _Session) -> None:
        try:
            raw = await self.analysis_client.poll(request_id, self.max_poll_attempts, cancel=session.cancel)
        except PollCancelledError:
            logger.info("Polling for %s cancelled", request_id)
            return
        except PollTimeoutError as e:
            self._fail(session, WorkflowState.POLLING, e.message, request_id=request_id, retryable_poll=True)
            return
        except AnalysisError as e:
            self._fail(session, WorkflowState.POLLING, e.message, request_id=request_id)
            return
        except Exception as e:
            logger.exception("Unexpected error while polling %s", request_id)
            self._fail(session, WorkflowState.POLLING, f"Unexpected error: {e}", request_id=request_id)
            return

        if not self._is_current(session):
            logger.info("Dropping analysis %s for %s; session moved on", request_id, session.patient_id)
            return

        self._set_state(WorkflowState.NORMALIZING)
        try:
            analysis = normalize(raw, case_id=request_id)
        except ValueError as e:
            logger.error("Could not normalize analysis %s: %s", request_id, e)
            self._fail(session, WorkflowState.NORMALIZING, "The analysis result could not be read", request_id)
            return

        self.analysis = analysis
        if self.patient_id:
            self.cache.put(ANALYSIS_NAMESPACE, self.patient_id, analysis.model_dump(mode="json", by_alias=True))
        self._set_state(WorkflowState.REVIEWED)
        self._publish("analysis", case_id=analysis.case_id, source="submission")
        # The new case is now the newest history record
        await self._refresh_history(session)

    def _fail(
        self,
        session: _Session,
        stage: WorkflowState,
        message: str,
        request_id: str | None = None,
        retryable_poll: bool = False,
    ) -> None:
        if not self._is_current(session):
            logger.info("Dropping %s failure for %s; session moved on", stage.value, session.patient_id)
            return
        self.error = WorkflowError(stage=stage, message=message, request_id=request_id, retryable_poll=retryable_poll)
        self._set_state(WorkflowState.ERROR)
        self._publish("error", stage=stage.value, message=message)

    # -- teardown ----------------------------------------------------------------------

    def _cancel_session(self) -> None:
        self._session.cancel.set()
        current = asyncio.current_task() if self._tasks else None
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    async def close(self) -> None:
        """Tear down timers and in-flight work."""
        self._cancel_draft_timer()
        self._cancel_session()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._set_state(WorkflowState.IDLE)
