"""Client for the remote diagnostics analysis service.

Submits intake cases and polls for their analysis. The service is treated
as an opaque request/poll API:

    POST /diagnostics/cases             -> {"id": ...}
    GET  /diagnostics/cases/{id}        -> {"status": "processing"} | result | failure
    POST /diagnostics/cases/{id}/notes  -> reviewer note (fire and forget)

Polling runs at a fixed interval, bounded by max_attempts, and can be
interrupted through an asyncio.Event checked on every iteration.
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from caseflow.config import (
    ANALYSIS_API_TOKEN,
    ANALYSIS_API_URL,
    DUMMY_MODE,
    POLL_ERROR_INTERVAL_SECONDS,
    POLL_INTERVAL_SECONDS,
    POLL_MAX_ATTEMPTS,
    REQUEST_TIMEOUT_SECONDS,
    SUBMIT_TIMEOUT_SECONDS,
)
from caseflow.errors import (
    AnalysisFailedError,
    PollCancelledError,
    PollTimeoutError,
    SubmissionError,
)
from caseflow.models.analysis import AnalysisRequest, RawAnalysisResponse
from caseflow.services.dummy_service import DummyDiagnosticsService

logger = logging.getLogger(__name__)

CASES_PATH = "/diagnostics/cases"

PENDING_STATUSES = {"pending", "processing", "queued", "analyzing"}
FAILED_STATUSES = {"failed", "error", "cancelled"}
COMPLETED_STATUSES = {"completed", "complete", "done"}

# Status codes worth another poll attempt
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def build_http_client(
    base_url: str = ANALYSIS_API_URL,
    token: str = ANALYSIS_API_TOKEN,
    dummy: bool = DUMMY_MODE,
) -> httpx.AsyncClient:
    """Shared client for the diagnostics API (simulated in DUMMY_MODE)."""
    if dummy:
        logger.info("DUMMY_MODE: using simulated diagnostics service")
        return httpx.AsyncClient(
            transport=httpx.MockTransport(DummyDiagnosticsService()),
            base_url="http://diagnostics.local",
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)


def _unwrap(body: Any) -> dict:
    """Strip the {"success": ..., "data": {...}} envelope used by the API."""
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body if isinstance(body, dict) else {}


def _extract_request_id(body: Any) -> str | None:
    data = _unwrap(body)
    for candidate in (data, data.get("request") or {}):
        if not isinstance(candidate, dict):
            continue
        value = candidate.get("id") or candidate.get("_id")
        if value:
            return str(value)
    return None


def _format_validation_details(data: dict) -> str:
    details = data.get("details") or data.get("errors")
    message = "Validation failed:\n"
    if isinstance(details, list):
        lines = []
        for err in details:
            if isinstance(err, str):
                lines.append(err)
            elif isinstance(err, dict) and err.get("path") and err.get("message"):
                lines.append(f"• {err['path']}: {err['message']}")
            elif isinstance(err, dict) and (err.get("message") or err.get("msg")):
                lines.append(f"• {err.get('message') or err.get('msg')}")
            else:
                lines.append(f"• {err}")
        return message + "\n".join(lines)
    if isinstance(details, dict):
        return message + str(details)
    return message + (data.get("message") or "Please check your input")


def describe_http_error(response: httpx.Response) -> str:
    """Turn an error response into the message shown to the pharmacist."""
    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    server_message = data.get("message")
    status = response.status_code

    if status == 422:
        return _format_validation_details(data)
    if status == 401:
        return f"Authentication Error: {server_message or 'Authentication failed'}"
    if status == 402:
        return f"Subscription Error: {server_message or 'Subscription required'}"
    if status == 403:
        return f"Permission Error: {server_message or 'Access denied'}"
    if status == 404:
        return f"Patient Error: {server_message or 'Patient not found or access denied'}"
    return server_message or f"Analysis service returned HTTP {status}"


def _classify(body: Any) -> tuple[str, dict]:
    """Return ("pending" | "failed" | "completed", payload) for a poll response."""
    data = _unwrap(body)
    request = data.get("request") if isinstance(data.get("request"), dict) else {}
    status = str(data.get("status") or request.get("status") or "").lower()

    if status in FAILED_STATUSES or data.get("error"):
        return "failed", data
    if status in PENDING_STATUSES:
        return "pending", data

    # Wrapped form: {"request": {...}, "result": {...}}
    if isinstance(data.get("result"), dict):
        payload = dict(data["result"])
        payload.setdefault("id", request.get("_id") or request.get("id"))
        payload.setdefault("processingTime", data.get("processingTime"))
        return "completed", payload
    if status in COMPLETED_STATUSES or "analysis" in data:
        return "completed", data
    return "pending", data


async def _wait(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep for delay seconds. Returns True if cancelled while waiting."""
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class AnalysisClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        error_interval: float = POLL_ERROR_INTERVAL_SECONDS,
        submit_timeout: float = SUBMIT_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self.poll_interval = poll_interval
        self.error_interval = error_interval
        self.submit_timeout = submit_timeout

    async def submit(self, request: AnalysisRequest) -> str:
        """Submit a case; returns the request id. Never retried here."""
        try:
            resp = await self._client.post(
                CASES_PATH,
                json=request.model_dump(mode="json", by_alias=True),
                timeout=self.submit_timeout,
            )
        except httpx.HTTPError as e:
            logger.error("Case submission for patient %s failed: %s", request.patient_id, e)
            raise SubmissionError(f"Could not reach the analysis service: {e}") from e

        if resp.is_error:
            message = describe_http_error(resp)
            logger.error("Case submission rejected with HTTP %s: %s", resp.status_code, message)
            raise SubmissionError(message, status_code=resp.status_code)

        try:
            body = resp.json()
        except ValueError as e:
            raise SubmissionError("Analysis service returned an unreadable response") from e

        request_id = _extract_request_id(body)
        if not request_id:
            raise SubmissionError("Analysis service did not return a request id")
        logger.info("Submitted case for patient %s as request %s", request.patient_id, request_id)
        return request_id

    async def poll(
        self,
        request_id: str,
        max_attempts: int = POLL_MAX_ATTEMPTS,
        cancel: asyncio.Event | None = None,
    ) -> RawAnalysisResponse:
        """Poll until the analysis reaches a terminal state.

        Raises AnalysisFailedError on a terminal failure, PollTimeoutError
        once max_attempts are used up and PollCancelledError if cancel is set.
        """
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise PollCancelledError(request_id)

            delay = self.poll_interval
            try:
                resp = await self._client.get(f"{CASES_PATH}/{request_id}")
            except httpx.HTTPError as e:
                logger.warning("Poll %d/%d for %s failed: %s", attempt, max_attempts, request_id, e)
                last_error = e
                delay = self.error_interval
            else:
                if resp.status_code in TRANSIENT_STATUS_CODES:
                    logger.warning(
                        "Poll %d/%d for %s got HTTP %s", attempt, max_attempts, request_id, resp.status_code,
                    )
                    last_error = httpx.HTTPStatusError(
                        f"HTTP {resp.status_code}", request=resp.request, response=resp,
                    )
                    delay = self.error_interval
                elif resp.is_error:
                    raise AnalysisFailedError(describe_http_error(resp), status_code=resp.status_code)
                else:
                    try:
                        body = resp.json()
                    except ValueError:
                        body = {}
                    outcome, payload = _classify(body)
                    if outcome == "completed":
                        logger.info("Analysis %s completed after %d poll(s)", request_id, attempt)
                        try:
                            result = RawAnalysisResponse.model_validate(payload)
                        except ValidationError as e:
                            logger.error("Analysis %s returned an unreadable result: %s", request_id, e)
                            raise AnalysisFailedError("Analysis service returned an unreadable result") from None
                        if not result.id:
                            result.id = request_id
                        return result
                    if outcome == "failed":
                        message = payload.get("message") or payload.get("error") or "AI analysis failed"
                        raise AnalysisFailedError(str(message))
                    logger.debug("Analysis %s still processing (%d/%d)", request_id, attempt, max_attempts)

            if attempt < max_attempts and await _wait(delay, cancel):
                raise PollCancelledError(request_id)

        logger.warning("Gave up polling %s after %d attempts", request_id, max_attempts)
        raise PollTimeoutError(request_id, max_attempts) from last_error

    async def attach_note(self, case_id: str, notes: str) -> bool:
        """Attach a reviewer note to a history record. Failures are logged only."""
        try:
            resp = await self._client.post(f"{CASES_PATH}/{case_id}/notes", json={"notes": notes})
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Saving notes for %s returned HTTP %s", case_id, e.response.status_code)
            return False
        except httpx.HTTPError as e:
            logger.error("Saving notes for %s failed: %s", case_id, e)
            return False
        return True
