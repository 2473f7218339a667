from datetime import datetime

from pydantic import BaseModel, Field


class ContactOut(BaseModel):
    id: int
    name: str | None = None
    email: str
    title: str | None = None
    company: str | None = None
    source_url: str | None = None
    target_lists: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created_at: datetime


class ContactPage(BaseModel):
    items: list[ContactOut]
    next_cursor: int | None = None


class CsvRowError(BaseModel):
    row: int
    message: str


class CsvImportResult(BaseModel):
    total_rows: int
    inserted: int
    skipped_duplicates: int
    invalid: int
    batches: int
    errors: list[CsvRowError] = Field(default_factory=list)
