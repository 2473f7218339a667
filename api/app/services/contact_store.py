from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc


class ContactStoreError(Exception):
    """Base contact store error."""


class ContactStoreUnavailableError(ContactStoreError):
    """Raised when the database is unavailable or not configured."""


class ContactConflictError(ContactStoreError):
    """Raised when a contact with the same email already exists."""


@dataclass(slots=True)
class ContactRecord:
    email: str
    name: str | None = None
    title: str | None = None
    company: str | None = None
    source_url: str | None = None
    target_lists: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @property
    def normalized_email(self) -> str:
        return self.email.strip().lower()


@dataclass(slots=True, frozen=True)
class CreateManyResult:
    inserted: int
    skipped: int


class ContactStore(Protocol):
    async def create_contact(self, record: ContactRecord) -> dict[str, Any]: ...

    async def find_contacts(
        self,
        *,
        email: str | None = None,
        query: str | None = None,
        tag: str | None = None,
        after_id: int | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]: ...

    async def create_many(self, records: list[ContactRecord], skip_duplicates: bool = True) -> CreateManyResult: ...

    async def close(self) -> None: ...


class InMemoryContactStore:
    def __init__(self) -> None:
        self._rows: dict[int, dict[str, Any]] = {}
        self._ids_by_email: dict[str, int] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._rows)

    async def create_contact(self, record: ContactRecord) -> dict[str, Any]:
        email = record.normalized_email
        if not email:
            raise ValueError("email is required")
        if email in self._ids_by_email:
            raise ContactConflictError(f"contact with email {email} already exists")
        return dict(self._insert(record, email))

    async def find_contacts(
        self,
        *,
        email: str | None = None,
        query: str | None = None,
        tag: str | None = None,
        after_id: int | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        needle = query.strip().lower() if query else None
        rows: list[dict[str, Any]] = []
        for contact_id in sorted(self._rows):
            if after_id is not None and contact_id <= after_id:
                continue
            row = self._rows[contact_id]
            if email and row["email"] != email.strip().lower():
                continue
            if tag and tag not in row["tags"]:
                continue
            if needle and not any(needle in (row[key] or "").lower() for key in ("name", "email", "company", "title")):
                continue
            rows.append(dict(row))
            if len(rows) >= limit:
                break
        return rows

    async def create_many(self, records: list[ContactRecord], skip_duplicates: bool = True) -> CreateManyResult:
        inserted = 0
        skipped = 0
        for record in records:
            email = record.normalized_email
            if email in self._ids_by_email:
                if not skip_duplicates:
                    raise ContactConflictError(f"contact with email {email} already exists")
                skipped += 1
                continue
            self._insert(record, email)
            inserted += 1
        return CreateManyResult(inserted=inserted, skipped=skipped)

    async def close(self) -> None:
        return None

    def _insert(self, record: ContactRecord, email: str) -> dict[str, Any]:
        contact_id = self._next_id
        self._next_id += 1
        row = {
            "id": contact_id,
            "email": email,
            "name": record.name,
            "title": record.title,
            "company": record.company,
            "source_url": record.source_url,
            "target_lists": list(record.target_lists),
            "tags": list(record.tags),
            "created_at": datetime.now(timezone.utc),
        }
        self._rows[contact_id] = row
        self._ids_by_email[email] = contact_id
        return row


SCHEMA_SQL = """
create table if not exists media_contacts (
  id bigserial primary key,
  email text not null unique,
  name text,
  title text,
  company text,
  source_url text,
  target_lists text[] not null default '{}',
  tags text[] not null default '{}',
  created_at timestamptz not null default now()
)
"""

_CONTACT_COLUMNS = "id, email, name, title, company, source_url, target_lists, tags, created_at"


class PostgresContactStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await pool.execute(SCHEMA_SQL)

    async def create_contact(self, record: ContactRecord) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into media_contacts (email, name, title, company, source_url, target_lists, tags)
            values ($1, $2, $3, $4, $5, $6::text[], $7::text[])
            on conflict (email) do nothing
            returning {_CONTACT_COLUMNS}
            """,
            record.normalized_email,
            record.name,
            record.title,
            record.company,
            record.source_url,
            record.target_lists,
            record.tags,
        )
        if row is None:
            raise ContactConflictError(f"contact with email {record.normalized_email} already exists")
        return dict(row)

    async def find_contacts(
        self,
        *,
        email: str | None = None,
        query: str | None = None,
        tag: str | None = None,
        after_id: int | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if email:
            conditions.append(f"email = {bind(email.strip().lower())}")
        if query and query.strip():
            token = bind(f"%{query.strip()}%")
            conditions.append(
                f"(coalesce(name, '') ilike {token} or email ilike {token} "
                f"or coalesce(company, '') ilike {token} or coalesce(title, '') ilike {token})"
            )
        if tag:
            conditions.append(f"{bind(tag)} = any(tags)")
        if after_id is not None:
            conditions.append(f"id > {bind(after_id)}")

        where_sql = " and ".join(conditions) if conditions else "true"
        limit_token = bind(limit)
        rows = await pool.fetch(
            f"""
            select {_CONTACT_COLUMNS}
            from media_contacts
            where {where_sql}
            order by id asc
            limit {limit_token}
            """,
            *params,
        )
        return [dict(row) for row in rows]

    async def create_many(self, records: list[ContactRecord], skip_duplicates: bool = True) -> CreateManyResult:
        if not records:
            return CreateManyResult(inserted=0, skipped=0)

        unique: dict[str, ContactRecord] = {}
        for record in records:
            unique.setdefault(record.normalized_email, record)
        batch = list(unique.values())
        conflict_sql = "on conflict (email) do nothing" if skip_duplicates else ""

        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                insert into media_contacts (email, name, title, company, source_url, tags)
                select e, n, t, c, s, coalesce(string_to_array(nullif(g, ''), ','), '{{}}')
                from unnest($1::text[], $2::text[], $3::text[], $4::text[], $5::text[], $6::text[])
                  as u(e, n, t, c, s, g)
                {conflict_sql}
                returning id
                """,
                [record.normalized_email for record in batch],
                [record.name for record in batch],
                [record.title for record in batch],
                [record.company for record in batch],
                [record.source_url for record in batch],
                # tags are comma-free after csv parsing
                [",".join(record.tags) for record in batch],
            )
        except pg_exc.UniqueViolationError as exc:
            raise ContactConflictError("batch contains an email that already exists") from exc
        return CreateManyResult(inserted=len(rows), skipped=len(records) - len(rows))

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise ContactStoreUnavailableError("MC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise ContactStoreUnavailableError("database unavailable") from exc
