import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError

from caseflow.models.draft import SymptomKind
from caseflow.models.history import HistoryRecord
from caseflow.models.validation import ValidationReport
from caseflow.models.workflow import WorkflowSnapshot
from caseflow.services.workflow import CaseWorkflowController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflow", tags=["workflow"])
ws_router = APIRouter()


class PatientSelect(BaseModel):
    patient_id: str | None = None


class SymptomCreate(BaseModel):
    kind: SymptomKind = "subjective"
    text: str = ""


class SymptomUpdate(BaseModel):
    text: str


class TouchRequest(BaseModel):
    fields: list[str]


class NoteCreate(BaseModel):
    notes: str


class CompareRequest(BaseModel):
    case_ids: list[str]


def get_controller(request: Request) -> CaseWorkflowController:
    return request.app.state.controller


def _ensure_idle(controller: CaseWorkflowController) -> None:
    if controller.busy:
        raise HTTPException(status_code=409, detail=f"Analysis in progress ({controller.state.value})")


def _apply(edit, *args, **kwargs) -> ValidationReport:
    try:
        return edit(*args, **kwargs)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    except IndexError:
        raise HTTPException(status_code=404, detail="Symptom not found") from None


@router.get("", response_model=WorkflowSnapshot)
async def get_snapshot(controller: CaseWorkflowController = Depends(get_controller)):
    return controller.snapshot()


@router.post("/patient", response_model=WorkflowSnapshot)
async def select_patient(body: PatientSelect, controller: CaseWorkflowController = Depends(get_controller)):
    """Switch the active patient."""
    return await controller.select_patient(body.patient_id)


@router.patch("/draft", response_model=ValidationReport)
async def update_draft(body: dict[str, Any], controller: CaseWorkflowController = Depends(get_controller)):
    _ensure_idle(controller)
    return _apply(controller.update_draft, **body)


@router.patch("/vitals", response_model=ValidationReport)
async def update_vitals(body: dict[str, Any], controller: CaseWorkflowController = Depends(get_controller)):
    _ensure_idle(controller)
    return _apply(controller.update_vitals, **body)


@router.post("/symptoms", response_model=ValidationReport)
async def add_symptom(body: SymptomCreate, controller: CaseWorkflowController = Depends(get_controller)):
    _ensure_idle(controller)
    return controller.add_symptom(body.kind, body.text)


@router.put("/symptoms/{index}", response_model=ValidationReport)
async def update_symptom(
    index: int, body: SymptomUpdate, controller: CaseWorkflowController = Depends(get_controller),
):
    _ensure_idle(controller)
    return _apply(controller.update_symptom, index, body.text)


@router.delete("/symptoms/{index}", response_model=ValidationReport)
async def remove_symptom(index: int, controller: CaseWorkflowController = Depends(get_controller)):
    _ensure_idle(controller)
    return _apply(controller.remove_symptom, index)


@router.post("/touch", response_model=ValidationReport)
async def touch(body: TouchRequest, controller: CaseWorkflowController = Depends(get_controller)):
    return controller.touch(*body.fields)


@router.post("/submit", response_model=WorkflowSnapshot)
async def submit(controller: CaseWorkflowController = Depends(get_controller)):
    """Start analysis; progress is reported on the snapshot and the websocket."""
    _ensure_idle(controller)
    return await controller.submit(wait=False)


@router.post("/consent", response_model=WorkflowSnapshot)
async def grant_consent(controller: CaseWorkflowController = Depends(get_controller)):
    return await controller.grant_consent(wait=False)


@router.post("/retry", response_model=WorkflowSnapshot)
async def retry(controller: CaseWorkflowController = Depends(get_controller)):
    return controller.retry()


@router.post("/repoll", response_model=WorkflowSnapshot)
async def repoll(controller: CaseWorkflowController = Depends(get_controller)):
    return await controller.repoll(wait=False)


@router.get("/history", response_model=list[HistoryRecord])
async def get_history(controller: CaseWorkflowController = Depends(get_controller)):
    return controller.history.records


@router.post("/history/more", response_model=WorkflowSnapshot)
async def load_more_history(controller: CaseWorkflowController = Depends(get_controller)):
    return await controller.load_more_history()


@router.post("/history/compare", response_model=list[HistoryRecord])
async def compare_history(body: CompareRequest, controller: CaseWorkflowController = Depends(get_controller)):
    return controller.history.compare(body.case_ids)


@router.post("/history/{case_id}/notes")
async def attach_note(case_id: str, body: NoteCreate, controller: CaseWorkflowController = Depends(get_controller)):
    """Attach a reviewer note to a history record."""
    if controller.history.find(case_id) is None:
        raise HTTPException(status_code=404, detail="Case not found in history")
    if not await controller.attach_note(case_id, body.notes):
        raise HTTPException(status_code=502, detail="Failed to save notes")
    return {"status": "saved", "case_id": case_id}


@router.get("/history/{case_id}/export")
async def export_case(case_id: str, controller: CaseWorkflowController = Depends(get_controller)):
    exported = controller.history.export_json(case_id)
    if exported is None:
        raise HTTPException(status_code=404, detail="Case not found in history")
    return Response(
        content=exported,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="case-{case_id}.json"'},
    )


@ws_router.websocket("/ws/workflow")
async def workflow_events(websocket: WebSocket):
    """Stream workflow events (state changes, autosaves, analyses) to the client."""
    await websocket.accept()
    controller: CaseWorkflowController = websocket.app.state.controller
    queue = controller.event_bus.subscribe_all()

    async def _forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    await websocket.send_json({"type": "snapshot", **controller.snapshot().model_dump(mode="json", by_alias=True)})
    forward = asyncio.create_task(_forward())
    try:
        # Client messages are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Workflow websocket disconnected")
    finally:
        forward.cancel()
        controller.event_bus.unsubscribe_all(queue)
