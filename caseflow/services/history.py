"""Paged diagnostic history for the active patient.

Pages arrive newest-first from the server and are kept in arrival order:
page 1 replaces the sequence, later pages append (skipping records already
seen). The most recent record can seed the analysis view when nothing else
is in view; that hydration happens at most once per patient session.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from caseflow.cache import ANALYSIS_NAMESPACE, DurableCache
from caseflow.config import HISTORY_PAGE_LIMIT
from caseflow.models.analysis import NormalizedAnalysis
from caseflow.models.history import HistoryPage, HistoryRecord, ReviewerDecision
from caseflow.services.analysis_client import AnalysisClient

logger = logging.getLogger(__name__)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value) if value else default
    except (TypeError, ValueError):
        return default


def _parse_page(body: Any, page: int, limit: int) -> HistoryPage:
    data = body.get("data") if isinstance(body, dict) and isinstance(body.get("data"), dict) else body
    if not isinstance(data, dict):
        return HistoryPage(page=page, limit=limit)

    raw_items = data.get("cases")
    if raw_items is None:
        raw_items = data.get("items", [])
    pagination = data.get("pagination") if isinstance(data.get("pagination"), dict) else data

    items = []
    for raw in raw_items if isinstance(raw_items, list) else []:
        try:
            items.append(HistoryRecord.model_validate(raw))
        except ValidationError as e:
            logger.warning("Skipping malformed history record: %s", e.errors()[0].get("msg"))

    total = _as_int(pagination.get("total"), len(items))
    pages = _as_int(pagination.get("pages"), -(-total // limit) if limit else 0)
    return HistoryPage(
        items=items,
        page=_as_int(pagination.get("page"), page),
        limit=_as_int(pagination.get("limit"), limit),
        total=total,
        pages=pages,
    )


def analysis_from_record(record: HistoryRecord) -> NormalizedAnalysis | None:
    """Build the view model for a history record's embedded analysis."""
    if not record.ai_analysis:
        return None
    payload = dict(record.ai_analysis)
    payload.setdefault("caseId", record.case_id or record.id)
    payload.setdefault("processingTimeMs", record.processing_time)
    try:
        return NormalizedAnalysis.model_validate(payload)
    except ValidationError as e:
        logger.warning("History record %s has an unreadable analysis: %s", record.id, e)
        return None


class HistoryAggregator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        analysis_client: AnalysisClient | None = None,
        limit: int = HISTORY_PAGE_LIMIT,
    ) -> None:
        self._client = client
        self._analysis_client = analysis_client
        self.limit = limit
        self.patient_id: str | None = None
        self.records: list[HistoryRecord] = []
        self.page = 0
        self.total = 0
        self.pages = 0
        self._hydrated: set[str] = set()

    def reset(self, patient_id: str | None = None) -> None:
        """Forget loaded pages and hydration state (patient switch)."""
        self.patient_id = patient_id
        self.records = []
        self.page = 0
        self.total = 0
        self.pages = 0
        self._hydrated.clear()

    @property
    def has_more(self) -> bool:
        return len(self.records) < self.total

    async def fetch_page(self, patient_id: str, page: int = 1) -> HistoryPage:
        resp = await self._client.get(
            f"/diagnostics/patients/{patient_id}/history",
            params={"page": page, "limit": self.limit},
        )
        resp.raise_for_status()
        result = _parse_page(resp.json(), page, self.limit)

        if self.patient_id is None:
            self.patient_id = patient_id
        elif patient_id != self.patient_id:
            logger.info("Dropping history page for %s; active patient is %s", patient_id, self.patient_id)
            return result

        if page == 1:
            self.records = list(result.items)
        else:
            seen = {r.id for r in self.records}
            self.records.extend(r for r in result.items if r.id not in seen)
        self.page = page
        self.total = result.total
        self.pages = result.pages
        logger.info(
            "Loaded history page %d for patient %s (%d/%d records)",
            page, patient_id, len(self.records), self.total,
        )
        return result

    async def load_more(self) -> HistoryPage | None:
        if not self.patient_id or not self.has_more:
            return None
        return await self.fetch_page(self.patient_id, self.page + 1)

    def hydrate(
        self,
        patient_id: str,
        current: NormalizedAnalysis | None,
        cache: DurableCache,
    ) -> NormalizedAnalysis | None:
        """Promote the newest record's analysis when nothing is in view.

        Returns the promoted analysis, or None when hydration does not apply.
        Runs at most once per patient session and never replaces an analysis
        that is already in view.
        """
        if current is not None or patient_id in self._hydrated:
            return None
        if patient_id != self.patient_id or self.page != 1 or not self.records:
            return None
        self._hydrated.add(patient_id)

        analysis = analysis_from_record(self.records[0])
        if analysis is None:
            return None
        cache.put(ANALYSIS_NAMESPACE, patient_id, analysis.model_dump(mode="json", by_alias=True))
        logger.info("Hydrated analysis for patient %s from case %s", patient_id, analysis.case_id)
        return analysis

    def find(self, case_id: str) -> HistoryRecord | None:
        for record in self.records:
            if case_id in (record.case_id, record.id):
                return record
        return None

    async def attach_note(self, case_id: str, notes: str) -> bool:
        """Send a reviewer note and mirror it on the local record."""
        if self._analysis_client is None:
            raise RuntimeError("No analysis client configured for notes")
        ok = await self._analysis_client.attach_note(case_id, notes)
        if not ok:
            return False
        record = self.find(case_id)
        if record is not None:
            decision = record.pharmacist_decision or ReviewerDecision()
            record.pharmacist_decision = decision.model_copy(update={
                "notes": notes,
                "reviewed_at": datetime.now(UTC).isoformat(),
            })
        return True

    def export_json(self, case_id: str) -> str | None:
        record = self.find(case_id)
        if record is None:
            return None
        return json.dumps(record.model_dump(mode="json", by_alias=True), indent=2)

    def compare(self, case_ids: list[str]) -> list[HistoryRecord]:
        """Records selected for side-by-side comparison, in history order."""
        wanted = set(case_ids)
        return [r for r in self.records if r.id in wanted or r.case_id in wanted]
