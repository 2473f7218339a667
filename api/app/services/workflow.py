from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from app.core.auth import Principal
from app.core.errors import ErrorCode, SearchError
from app.schemas.search import CandidateContact, ImportRequest, ImportResult, JobProgress, JobStatus, SearchJob, SearchRequest
from app.services.orchestrator import SearchOrchestrator
from app.services.progress import EventType, ProgressChannel, ProgressEvent, Subscription

logger = logging.getLogger(__name__)

# Failures a plain "try again" will not fix.
NON_RETRYABLE_CODES = frozenset({ErrorCode.BUDGET_EXCEEDED.value, ErrorCode.QUOTA_EXCEEDED.value, ErrorCode.AUTH.value})


class WorkflowStatus(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_STATUS_BY_JOB = {
    JobStatus.SUBMITTED: WorkflowStatus.RUNNING,
    JobStatus.RUNNING: WorkflowStatus.RUNNING,
    JobStatus.COMPLETED: WorkflowStatus.COMPLETED,
    JobStatus.FAILED: WorkflowStatus.FAILED,
    JobStatus.CANCELLED: WorkflowStatus.CANCELLED,
}

_STATUS_BY_EVENT = {
    EventType.COMPLETED: WorkflowStatus.COMPLETED,
    EventType.FAILED: WorkflowStatus.FAILED,
    EventType.CANCELLED: WorkflowStatus.CANCELLED,
}


@dataclass(slots=True)
class WorkflowState:
    current_search: str | None = None
    search_status: WorkflowStatus = WorkflowStatus.IDLE
    search_progress: JobProgress | None = None
    search_error: str | None = None
    error_code: str | None = None
    retry_after: float | None = None
    contacts: list[CandidateContact] = field(default_factory=list)
    selected_contacts: set[str] = field(default_factory=set)
    loading_contacts: bool = False
    importing: bool = False
    import_progress: int = 0
    last_import: ImportResult | None = None
    last_sequence_number: int = 0


class SearchWorkflow:
    """Per-session view over one search at a time.

    Composes submit, progress subscription, candidate loading and import into
    a single state object that a UI (or the CLI) can render.
    """

    def __init__(
        self,
        orchestrator: SearchOrchestrator,
        channel: ProgressChannel,
        principal: Principal,
        on_change: Callable[[WorkflowState], None] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.channel = channel
        self.principal = principal
        self.state = WorkflowState()
        self._on_change = on_change
        self._subscription: Subscription | None = None
        self._loader: asyncio.Task[None] | None = None

    @property
    def has_active_search(self) -> bool:
        return self.state.search_status in (WorkflowStatus.SUBMITTING, WorkflowStatus.RUNNING)

    @property
    def has_results(self) -> bool:
        return bool(self.state.contacts)

    @property
    def has_selection(self) -> bool:
        return bool(self.state.selected_contacts)

    @property
    def can_import(self) -> bool:
        return self.state.current_search is not None and self.has_selection and not self.state.importing

    @property
    def can_retry(self) -> bool:
        return self.state.search_status is WorkflowStatus.FAILED and self.state.error_code not in NON_RETRYABLE_CODES

    async def submit_search(self, request: SearchRequest) -> str | None:
        if self.has_active_search:
            await self.cancel_search("superseded by a new search")
        self._detach()
        self._cancel_loader()
        self.state = WorkflowState(search_status=WorkflowStatus.SUBMITTING)
        self._changed()

        try:
            submission = await self.orchestrator.submit(self.principal, request)
        except SearchError as exc:
            self._set_error(exc.code.value, exc.message, exc.retry_after_seconds)
            self.state.search_status = WorkflowStatus.FAILED
            self._changed()
            return None

        self.state.current_search = submission.job_id
        self.state.search_status = WorkflowStatus.RUNNING
        self._subscription = self.channel.subscribe(submission.job_id, self._on_event)
        await self.refresh_status()
        return submission.job_id

    async def cancel_search(self, reason: str | None = None) -> SearchJob | None:
        if self.state.current_search is None:
            return None
        job = await self.orchestrator.cancel(self.state.current_search, self.principal, reason)
        self._apply_snapshot(job)
        return job

    async def refresh_status(self) -> SearchJob | None:
        if self.state.current_search is None:
            return None
        job = self.orchestrator.get_status(self.state.current_search, self.principal)
        self._apply_snapshot(job)
        return job

    async def load_results(self) -> list[CandidateContact]:
        if self.state.current_search is None:
            return []
        self.state.loading_contacts = True
        self._changed()
        try:
            contacts = self.orchestrator.candidates(self.state.current_search, self.principal)
        finally:
            self.state.loading_contacts = False
        self.state.contacts = contacts
        known = {contact.id for contact in contacts}
        self.state.selected_contacts &= known
        self._changed()
        return contacts

    def toggle_contact_selection(self, contact_id: str) -> None:
        if contact_id in self.state.selected_contacts:
            self.state.selected_contacts.discard(contact_id)
        else:
            self.state.selected_contacts.add(contact_id)
        self._changed()

    def set_selected_contacts(self, contact_ids: Iterable[str]) -> None:
        self.state.selected_contacts = set(contact_ids)
        self._changed()

    def select_all_contacts(self) -> None:
        self.state.selected_contacts = {contact.id for contact in self.state.contacts}
        self._changed()

    def clear_contact_selection(self) -> None:
        self.state.selected_contacts = set()
        self._changed()

    async def import_selected_contacts(
        self,
        target_lists: Sequence[str] = (),
        tags: Sequence[str] = (),
    ) -> ImportResult | None:
        if not self.can_import:
            return None
        assert self.state.current_search is not None
        request = ImportRequest(
            contact_ids=sorted(self.state.selected_contacts),
            target_lists=list(target_lists),
            tags=list(tags),
        )
        self.state.importing = True
        self.state.import_progress = 0
        self._changed()
        try:
            result = await self.orchestrator.import_selected(self.state.current_search, self.principal, request)
        finally:
            self.state.importing = False

        done = set(result.imported_ids) | set(result.already_imported)
        self.state.selected_contacts -= done
        self.state.import_progress = 100
        self.state.last_import = result
        self._changed()
        return result

    async def settle(self) -> None:
        """Wait for a candidate load triggered by a terminal event."""
        if self._loader is not None:
            loader, self._loader = self._loader, None
            await loader

    def reset(self) -> None:
        self._detach()
        self._cancel_loader()
        self.state = WorkflowState()
        self._changed()

    async def close(self) -> None:
        await self.settle()
        self.reset()

    def _on_event(self, event: ProgressEvent) -> None:
        if event.job_id != self.state.current_search:
            return
        if event.sequence_number <= self.state.last_sequence_number:
            return
        self.state.last_sequence_number = event.sequence_number
        payload = event.payload
        self.state.search_progress = JobProgress(
            stage=payload.get("stage", "searching"),
            percent=int(payload.get("percent", 0)),
            message=payload.get("message", ""),
            estimated_remaining_seconds=payload.get("estimated_remaining_seconds"),
        )

        terminal_status = _STATUS_BY_EVENT.get(event.type)
        if terminal_status is not None:
            self.state.search_status = terminal_status
            error = payload.get("error")
            if event.type is EventType.FAILED and isinstance(error, dict):
                self._set_error(error.get("code"), error.get("message"), error.get("retry_after"))
            # Cancelled and failed searches keep their partial candidates.
            self._loader = asyncio.get_running_loop().create_task(self._load_finished(event.job_id))
        self._changed()

    def _cancel_loader(self) -> None:
        if self._loader is not None:
            self._loader.cancel()
            self._loader = None

    async def _load_finished(self, search_id: str) -> None:
        if self.state.current_search == search_id:
            await self.load_results()

    def _apply_snapshot(self, job: SearchJob) -> None:
        if job.id != self.state.current_search or job.last_sequence_number < self.state.last_sequence_number:
            return
        self.state.last_sequence_number = job.last_sequence_number
        self.state.search_status = _STATUS_BY_JOB[job.status]
        self.state.search_progress = job.progress.model_copy()
        if job.error is not None:
            self._set_error(job.error.code, job.error.message, job.error.retry_after)
        self._changed()

    def _set_error(self, code: str | None, message: str | None, retry_after: float | None) -> None:
        self.state.error_code = code
        self.state.search_error = message
        self.state.retry_after = retry_after

    def _detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.state)
        except Exception:
            logger.exception("workflow state listener failed search=%s", self.state.current_search)
