"""
Tests for document lifecycle rules, configuration and persistence.
"""
from __future__ import annotations

import asyncio
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from receiptdesk.core.config import PipelineConfig
from receiptdesk.core.event_bus import Event, EventBus, EventType
from receiptdesk.models import Contact, Document, DocumentStatus, IngestStage, StorageProvider
from receiptdesk.models.documents import InvalidStatusTransition, StorageProviderAlreadySet
from receiptdesk.services.audit import AuditTrailService
from receiptdesk.services.db import DB
from receiptdesk.services.errors import (
    ConfigError,
    PersistenceError,
    SignerNotConfiguredError,
    StorageError,
    UploadCancelledError,
    is_cancellation,
    to_http_exception,
)
from receiptdesk.services.repository import SqlContactRepository, SqlDocumentRepository


class TestDocument:
    def test_year_and_quarter_follow_date(self):
        doc = Document(name="a.pdf", date=datetime(2024, 11, 3, tzinfo=timezone.utc))
        assert (doc.year, doc.quarter) == (2024, 4)
        doc.date = datetime(2025, 4, 1, tzinfo=timezone.utc)
        assert (doc.year, doc.quarter) == (2025, 2)

    @pytest.mark.parametrize("month,quarter", [(1, 1), (3, 1), (4, 2), (6, 2), (7, 3), (9, 3), (10, 4), (12, 4)])
    def test_quarter_boundaries(self, month, quarter):
        assert Document(name="a", date=datetime(2024, month, 15, tzinfo=timezone.utc)).quarter == quarter

    def test_analyzing_moves_to_terminal_status(self):
        doc = Document(name="a.pdf")
        doc.transition(DocumentStatus.MISSING_INVOICE)
        assert doc.status == DocumentStatus.MISSING_INVOICE

    def test_no_way_back_to_analyzing(self):
        doc = Document(name="a.pdf")
        doc.transition(DocumentStatus.OK)
        with pytest.raises(InvalidStatusTransition):
            doc.transition(DocumentStatus.ANALYZING)
        with pytest.raises(InvalidStatusTransition):
            doc.transition(DocumentStatus.SCREENSHOT)

    def test_error_reachable_from_any_state(self):
        doc = Document(name="a.pdf")
        doc.transition(DocumentStatus.POTENTIAL_DUPLICATE)
        doc.transition(DocumentStatus.ERROR, "disk full")
        assert doc.status == DocumentStatus.ERROR
        assert doc.error_message == "disk full"

    def test_storage_provider_set_once(self):
        doc = Document(name="a.pdf")
        doc.record_upload(StorageProvider.OVERFLOW, "https://cdn.example/a.pdf", "u1/a.pdf")
        assert doc.storage_provider == StorageProvider.OVERFLOW
        assert doc.storage_path == "u1/a.pdf"
        with pytest.raises(StorageProviderAlreadySet):
            doc.record_upload(StorageProvider.PRIMARY, "https://primary.example/a.pdf")


class TestPipelineConfig:
    def test_defaults(self, monkeypatch):
        for name in ("STORAGE_USAGE_THRESHOLD", "R2_ENABLED", "UPLOAD_MAX_RETRIES", "PRIMARY_BUCKET",
                     "INGEST_CONCURRENCY", "UPLOAD_SIGNER_URL", "UPLOAD_RETRY_DELAY_MS"):
            monkeypatch.delenv(name, raising=False)
        config = PipelineConfig.from_env()
        assert config.usage_threshold == 0.8
        assert config.overflow_enabled is False
        assert config.reference_capacity_bytes == 1_000_000_000
        assert config.upload_max_retries == 3
        assert config.upload_retry_delay_ms == 400
        assert config.primary_bucket == "documents"
        assert config.signer_url is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("STORAGE_USAGE_THRESHOLD", "0.5")
        monkeypatch.setenv("R2_ENABLED", "true")
        monkeypatch.setenv("INGEST_CONCURRENCY", "8")
        config = PipelineConfig.from_env()
        assert config.usage_threshold == 0.5
        assert config.overflow_enabled is True
        assert config.ingest_concurrency == 8

    def test_invalid_values_raise(self, monkeypatch):
        monkeypatch.setenv("UPLOAD_MAX_RETRIES", "many")
        with pytest.raises(ConfigError):
            PipelineConfig.from_env()
        with pytest.raises(ConfigError):
            PipelineConfig(usage_threshold=1.5)
        with pytest.raises(ConfigError):
            PipelineConfig(ingest_concurrency=0)


class TestSqlRepositories:
    def setup_method(self):
        self.user = "u1"

    def test_documents_round_trip_through_sqlite(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        repo = SqlDocumentRepository(DB(sqlite_path=str(tmp_path / "state.sqlite3")))
        doc = Document(name="a.pdf", vendor="Aral", total_amount=12.5, date=datetime(2024, 2, 1, tzinfo=timezone.utc))
        doc.transition(DocumentStatus.OK)

        asyncio.run(repo.insert(self.user, doc))
        doc.transition(DocumentStatus.ERROR, "late failure")
        asyncio.run(repo.update(self.user, doc))
        stored = asyncio.run(repo.list_existing(self.user))

        assert len(stored) == 1
        assert stored[0].id == doc.id
        assert stored[0].status == DocumentStatus.ERROR
        assert stored[0].quarter == 1
        assert asyncio.run(repo.list_existing("someone-else")) == []

    def test_contacts_upsert_replaces_row(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        repo = SqlContactRepository(DB(sqlite_path=str(tmp_path / "state.sqlite3")))
        contact = Contact(id="c1", name="Obeta", source_ids=["d1"])

        asyncio.run(repo.upsert(self.user, contact))
        asyncio.run(repo.upsert(self.user, contact.model_copy(update={"source_ids": ["d1", "d2"]})))

        (stored,) = asyncio.run(repo.list(self.user))
        assert stored.source_ids == ["d1", "d2"]

    def test_database_errors_become_persistence_errors(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        db = DB(sqlite_path=str(tmp_path / "state.sqlite3"))
        repo = SqlDocumentRepository(db)
        db.execute("DROP TABLE documents")
        with pytest.raises(PersistenceError):
            asyncio.run(repo.list_existing(self.user))


class SlowDB(DB):
    """Sqlite DB whose writes take a while and remember which thread ran them."""

    def __init__(self, path: str):
        super().__init__(sqlite_path=path)
        self.threads = set()

    def execute(self, sql, params=()):
        self.threads.add(threading.current_thread().name)
        time.sleep(0.05)
        super().execute(sql, params)


class TestAuditAndEvents:
    def test_audit_trail_is_append_only_per_document(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        db = DB(sqlite_path=str(tmp_path / "audit.sqlite3"))
        audit = AuditTrailService(db=db)

        async def record():
            await audit.record_event("doc-1", IngestStage.QUEUED, "accepted", user_id="u1")
            await audit.record_event("doc-2", IngestStage.QUEUED, "accepted", user_id="u1")
            await audit.record_event("doc-1", IngestStage.DONE, "done", user_id="u1", details={"status": "ok"})
            return await audit.load_trail("doc-1")

        trail = asyncio.run(record())

        assert audit.stages_for("doc-1") == [IngestStage.QUEUED, IngestStage.DONE]
        assert [row["stage"] for row in trail] == ["queued", "done"]
        assert trail[1]["details"] == {"status": "ok"}

    def test_db_writes_do_not_block_the_event_loop(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        db = SlowDB(str(tmp_path / "audit.sqlite3"))
        audit = AuditTrailService(db=db)

        async def run():
            ticks = 0
            stop = asyncio.Event()

            async def ticker():
                nonlocal ticks
                while not stop.is_set():
                    ticks += 1
                    await asyncio.sleep(0.005)

            task = asyncio.create_task(ticker())
            await asyncio.sleep(0)
            for i in range(4):
                await audit.record_event(f"doc-{i}", IngestStage.QUEUED, "accepted")
            stop.set()
            await task
            return ticks

        ticks = asyncio.run(run())

        assert "MainThread" not in db.threads
        assert ticks > 10

    def test_memory_trail_is_bounded(self):
        audit = AuditTrailService(max_events=3)

        async def record():
            for i in range(5):
                await audit.record_event("doc-1", IngestStage.ANALYZING, f"step {i}")
            return await audit.load_trail("doc-1")

        trail = asyncio.run(record())

        assert [row["summary"] for row in trail] == ["step 2", "step 3", "step 4"]

    def test_failing_handler_does_not_break_publish(self):
        bus = EventBus()
        seen = []

        async def good(event):
            seen.append(event.data["vendor"])

        def bad(event):
            raise RuntimeError("handler exploded")

        bus.subscribe(EventType.RULE_SUGGESTED, bad)
        bus.subscribe(EventType.RULE_SUGGESTED, good)
        asyncio.run(bus.publish(Event(type=EventType.RULE_SUGGESTED, data={"vendor": "Aral"}, user_id="u1")))

        assert seen == ["Aral"]
        assert len(bus.get_history(user_id="u1")) == 1

    def test_unsubscribe_handle(self):
        bus = EventBus(max_history=2)
        seen = []

        async def handler(event):
            seen.append(event.data["n"])

        remove = bus.subscribe(EventType.DOCUMENT_INGESTED, handler)
        asyncio.run(bus.publish(Event(type=EventType.DOCUMENT_INGESTED, data={"n": 1})))
        remove()
        asyncio.run(bus.publish(Event(type=EventType.DOCUMENT_INGESTED, data={"n": 2})))
        asyncio.run(bus.publish(Event(type=EventType.DOCUMENT_FAILED, data={"n": 3})))

        assert seen == [1]
        assert [e.data["n"] for e in bus.get_history()] == [2, 3]
        assert [e.data["n"] for e in bus.get_history(event_type=EventType.DOCUMENT_FAILED)] == [3]


class TestErrors:
    def test_storage_error_keeps_backend_details(self):
        error = StorageError("bucket full", status=507, error_code="QuotaExceeded", provider="primary")
        payload = error.to_dict()
        assert payload["error"] == "STORAGE_FAILED"
        assert payload["context"] == {"status": 507, "provider": "primary"}
        assert error.error_code == "QuotaExceeded"

    def test_http_mapping(self):
        assert to_http_exception(SignerNotConfiguredError()).status_code == 503
        assert to_http_exception(PersistenceError("document", "locked")).status_code == 500
        assert to_http_exception(StorageError("boom")).status_code == 502

    def test_cancellation_detection(self):
        assert is_cancellation(UploadCancelledError("u1/a.pdf"))
        assert is_cancellation(asyncio.CancelledError())
        assert not is_cancellation(StorageError("timeout"))
