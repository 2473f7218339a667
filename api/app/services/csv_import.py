from __future__ import annotations

import logging

from app.schemas.contacts import CsvImportResult, CsvRowError
from app.services.batching import CsvRow, iter_batches, iter_csv_rows, process_batches
from app.services.contact_store import ContactRecord, ContactStore, CreateManyResult
from app.services.materializer import EMAIL_RE

logger = logging.getLogger(__name__)


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.replace(";", ",").split(",") if item.strip()]


def record_from_row(row: CsvRow) -> ContactRecord:
    values = row.values
    email = values.get("email", "")
    if not EMAIL_RE.fullmatch(email):
        raise ValueError("missing or invalid email")
    return ContactRecord(
        email=email,
        name=values.get("name") or None,
        title=values.get("title") or None,
        company=values.get("company") or values.get("outlet") or None,
        source_url=values.get("source_url") or None,
        tags=_split_list(values.get("tags", "")),
    )


async def import_contacts_csv(
    store: ContactStore,
    text: str,
    *,
    batch_size: int,
    max_concurrent_batches: int,
) -> CsvImportResult:
    """Insert contacts from CSV text, skipping rows whose email already exists."""
    total_rows = 0
    invalid: list[CsvRowError] = []

    def records():
        nonlocal total_rows
        for row in iter_csv_rows(text):
            total_rows += 1
            try:
                yield record_from_row(row)
            except ValueError as exc:
                invalid.append(CsvRowError(row=row.line, message=str(exc)))

    async def insert(batch: list[ContactRecord]) -> CreateManyResult:
        return await store.create_many(batch, skip_duplicates=True)

    outcomes = await process_batches(iter_batches(records(), batch_size), insert, max_concurrent_batches)

    inserted = 0
    skipped = 0
    errors = list(invalid)
    for outcome in outcomes:
        if outcome.error is not None:
            logger.error("csv import batch failed batch=%s size=%s", outcome.index, outcome.size, exc_info=outcome.error)
            errors.append(CsvRowError(row=0, message=f"batch {outcome.index} failed: {type(outcome.error).__name__}"))
            continue
        assert outcome.result is not None
        inserted += outcome.result.inserted
        skipped += outcome.result.skipped

    logger.info(
        "csv import rows=%s inserted=%s skipped=%s invalid=%s batches=%s",
        total_rows,
        inserted,
        skipped,
        len(invalid),
        len(outcomes),
    )
    return CsvImportResult(
        total_rows=total_rows,
        inserted=inserted,
        skipped_duplicates=skipped,
        invalid=len(invalid),
        batches=len(outcomes),
        errors=errors,
    )
