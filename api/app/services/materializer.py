from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from opentelemetry import trace

from app.schemas.search import CandidateContact, ImportItemError, ImportResult
from app.services.batching import iter_batches, process_batches
from app.services.contact_store import (
    ContactConflictError,
    ContactRecord,
    ContactStore,
    ContactStoreUnavailableError,
)
from app.services.providers.base import WebSearchResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_CONFIDENCE = 0.8
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

_NAME_KEYS = ("author", "name", "contact_name")
_TITLE_KEYS = ("job_title", "role", "position")
_COMPANY_KEYS = ("company", "outlet", "publication", "organization")


def _first_text(metadata: dict[str, Any], keys: Sequence[str]) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _extract_email(result: WebSearchResult) -> str | None:
    explicit = result.metadata.get("email")
    if isinstance(explicit, str) and EMAIL_RE.fullmatch(explicit.strip()):
        return explicit.strip().lower()
    for text in (result.summary, result.title):
        match = EMAIL_RE.search(text or "")
        if match:
            return match.group(0).lower()
    return None


def _confidence(metadata: dict[str, Any]) -> float:
    raw = metadata.get("confidence", metadata.get("confidence_score"))
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, value))


def candidate_from_result(job_id: str, result: WebSearchResult) -> CandidateContact | None:
    """Map one provider result to a candidate, or None when it names nobody."""
    metadata = result.metadata or {}
    name = _first_text(metadata, _NAME_KEYS)
    email = _extract_email(result)
    if name is None and email is None:
        return None

    identity = email or (name or "").lower()
    return CandidateContact(
        id=str(uuid5(NAMESPACE_URL, f"{job_id}|{result.url}|{identity}")),
        job_id=job_id,
        name=name,
        email=email,
        title=_first_text(metadata, _TITLE_KEYS),
        company=_first_text(metadata, _COMPANY_KEYS) or (result.domain or None),
        confidence_score=_confidence(metadata),
        source_url=result.url,
        source_title=result.title or None,
        domain=result.domain or None,
        verification_status="verified" if metadata.get("verified") is True else "pending",
        metadata={"authority": result.authority, "relevance_score": result.relevance_score},
    )


def _dedupe_key(candidate: CandidateContact) -> tuple[str, ...]:
    if candidate.email:
        return ("email", candidate.email)
    return ("name", (candidate.name or "").lower(), (candidate.company or "").lower())


def materialize(job_id: str, results: Iterable[WebSearchResult]) -> list[CandidateContact]:
    """Build the candidate list for a job; the output does not depend on result order."""
    best: dict[tuple[str, ...], CandidateContact] = {}
    for result in results:
        candidate = candidate_from_result(job_id, result)
        if candidate is None:
            continue
        key = _dedupe_key(candidate)
        current = best.get(key)
        if current is None or (-candidate.confidence_score, candidate.source_url) < (
            -current.confidence_score,
            current.source_url,
        ):
            best[key] = candidate
    return sorted(best.values(), key=lambda candidate: (-candidate.confidence_score, candidate.id))


class ContactImporter:
    """Promotes selected candidates into the durable contact store.

    Imports are idempotent per candidate id: a candidate imported once is
    reported as already imported on later requests instead of being re-created.
    """

    def __init__(self, store: ContactStore, batch_size: int = 25, max_concurrent_batches: int = 3) -> None:
        self.store = store
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self._imported: dict[str, dict[str, int]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def imported_ids(self, job_id: str) -> dict[str, int]:
        return dict(self._imported.get(job_id, {}))

    def forget(self, job_id: str) -> None:
        self._imported.pop(job_id, None)
        self._locks.pop(job_id, None)

    async def import_selected(
        self,
        job_id: str,
        candidates: Sequence[CandidateContact],
        contact_ids: Sequence[str],
        target_lists: Sequence[str] = (),
        tags: Sequence[str] = (),
    ) -> ImportResult:
        requested = list(dict.fromkeys(contact_ids))
        by_id = {candidate.id: candidate for candidate in candidates}
        lock = self._locks.setdefault(job_id, asyncio.Lock())

        with tracer.start_as_current_span("search.import") as span:
            span.set_attribute("search.job_id", job_id)
            span.set_attribute("search.import.requested", len(requested))
            async with lock:
                imported = self._imported.setdefault(job_id, {})
                already: list[str] = []
                errors: list[ImportItemError] = []
                pending: list[CandidateContact] = []

                for contact_id in requested:
                    if contact_id in imported:
                        already.append(contact_id)
                        continue
                    candidate = by_id.get(contact_id)
                    if candidate is None:
                        errors.append(
                            ImportItemError(contact_id=contact_id, code="NOT_FOUND", message="unknown candidate id")
                        )
                        continue
                    if not candidate.email:
                        errors.append(
                            ImportItemError(
                                contact_id=contact_id,
                                code="VALIDATION",
                                message="candidate has no email address",
                            )
                        )
                        continue
                    pending.append(candidate)

                async def import_batch(batch: list[CandidateContact]) -> list[tuple[str, int | None, ImportItemError | None]]:
                    rows: list[tuple[str, int | None, ImportItemError | None]] = []
                    for candidate in batch:
                        rows.append(await self._import_one(candidate, target_lists, tags))
                    return rows

                outcomes = await process_batches(
                    iter_batches(pending, self.batch_size),
                    import_batch,
                    self.max_concurrent_batches,
                )
                offset = 0
                for outcome in outcomes:
                    batch = pending[offset : offset + outcome.size]
                    offset += outcome.size
                    if outcome.error is not None:
                        logger.error(
                            "contact import batch failed job_id=%s batch=%s",
                            job_id,
                            outcome.index,
                            exc_info=outcome.error,
                        )
                        errors.extend(
                            ImportItemError(contact_id=candidate.id, code="INTERNAL", message="import failed")
                            for candidate in batch
                        )
                        continue
                    for contact_id, durable_id, error in outcome.result or []:
                        if error is not None:
                            errors.append(error)
                        elif durable_id is not None:
                            imported[contact_id] = durable_id

                newly_imported = {
                    candidate.id: imported[candidate.id] for candidate in pending if candidate.id in imported
                }

            span.set_attribute("search.import.imported", len(newly_imported))
            span.set_attribute("search.import.failed", len(errors))

        logger.info(
            "contact import job_id=%s total=%s imported=%s failed=%s already=%s",
            job_id,
            len(requested),
            len(newly_imported),
            len(errors),
            len(already),
        )
        return ImportResult(
            total=len(requested),
            imported=len(newly_imported),
            failed=len(errors),
            already_imported=already,
            errors=errors,
            imported_ids=newly_imported,
        )

    async def _import_one(
        self,
        candidate: CandidateContact,
        target_lists: Sequence[str],
        tags: Sequence[str],
    ) -> tuple[str, int | None, ImportItemError | None]:
        record = ContactRecord(
            email=candidate.email or "",
            name=candidate.name,
            title=candidate.title,
            company=candidate.company,
            source_url=candidate.source_url,
            target_lists=list(target_lists),
            tags=list(tags),
        )
        try:
            row = await self.store.create_contact(record)
        except ContactConflictError:
            return (
                candidate.id,
                None,
                ImportItemError(
                    contact_id=candidate.id,
                    code="DUPLICATE_EMAIL",
                    message="a contact with this email already exists",
                ),
            )
        except ContactStoreUnavailableError:
            return (
                candidate.id,
                None,
                ImportItemError(contact_id=candidate.id, code="UPSTREAM_UNAVAILABLE", message="contact store unavailable"),
            )
        return candidate.id, int(row["id"]), None
