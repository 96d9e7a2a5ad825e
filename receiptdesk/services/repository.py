"""Document and contact persistence.

The pipeline only depends on the two protocols below. The SQL implementations
store each row as a JSON payload keyed by id and user so the schema stays
limited to the fields the pipeline itself reads and writes.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Protocol, TypeVar

from receiptdesk.models.contacts import Contact
from receiptdesk.models.documents import Document
from receiptdesk.services.db import DB
from receiptdesk.services.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COMPUTED_DOCUMENT_FIELDS = {"year", "quarter"}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id)",
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_contacts_user ON contacts(user_id)",
]


class DocumentRepository(Protocol):
    async def insert(self, user_id: str, document: Document) -> Document: ...

    async def update(self, user_id: str, document: Document) -> Document: ...

    async def list_existing(self, user_id: str) -> List[Document]: ...


class ContactRepository(Protocol):
    async def list(self, user_id: str) -> List[Contact]: ...

    async def upsert(self, user_id: str, contact: Contact) -> Contact: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def document_payload(document: Document) -> str:
    return document.model_dump_json(exclude=_COMPUTED_DOCUMENT_FIELDS)


class _SqlRepository:
    entity = "row"

    def __init__(self, db: DB | None = None) -> None:
        self.db = db or DB()
        self.db.executescript(SCHEMA)

    async def _run(self, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(self.entity, str(exc)) from exc


class SqlDocumentRepository(_SqlRepository):
    entity = "document"

    def _write(self, user_id: str, document: Document) -> None:
        self.db.execute(
            """
            INSERT INTO documents (id, user_id, status, payload, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (document.id, user_id, document.status.value, document_payload(document), _now()),
        )

    def _read_all(self, user_id: str) -> List[Document]:
        rows = self.db.fetchall_dict(
            "SELECT payload FROM documents WHERE user_id = ? ORDER BY updated_at",
            (user_id,),
        )
        return [Document.model_validate_json(row["payload"]) for row in rows]

    async def insert(self, user_id: str, document: Document) -> Document:
        await self._run(self._write, user_id, document)
        logger.debug("Stored document %s for %s", document.id, user_id)
        return document

    async def update(self, user_id: str, document: Document) -> Document:
        await self._run(self._write, user_id, document)
        return document

    async def list_existing(self, user_id: str) -> List[Document]:
        return await self._run(self._read_all, user_id)


class SqlContactRepository(_SqlRepository):
    entity = "contact"

    def _write(self, user_id: str, contact: Contact) -> None:
        self.db.execute(
            """
            INSERT INTO contacts (id, user_id, payload, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (contact.id, user_id, contact.model_dump_json(), _now()),
        )

    def _read_all(self, user_id: str) -> List[Contact]:
        rows = self.db.fetchall_dict(
            "SELECT payload FROM contacts WHERE user_id = ? ORDER BY updated_at",
            (user_id,),
        )
        return [Contact.model_validate_json(row["payload"]) for row in rows]

    async def list(self, user_id: str) -> List[Contact]:
        return await self._run(self._read_all, user_id)

    async def upsert(self, user_id: str, contact: Contact) -> Contact:
        await self._run(self._write, user_id, contact)
        return contact
