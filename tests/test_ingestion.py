"""
Tests for the batch ingestion pipeline.
"""
from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from fakes import FakeAnalyzer, FakeContactRepository, FakeDocumentRepository, FakeObjectStore, FakeStorageError
from receiptdesk.core.config import PipelineConfig
from receiptdesk.core.event_bus import EventBus, EventType
from receiptdesk.models import (
    AnalysisResult,
    Document,
    DocumentStatus,
    IncomingFile,
    IngestStage,
    SourceChannel,
    StorageProvider,
)
from receiptdesk.services.audit import AuditTrailService
from receiptdesk.services.classification import DEFAULT_RULES
from receiptdesk.services.contact_extraction import ContactExtractionService
from receiptdesk.services.ingestion import IngestionService
from receiptdesk.services.storage_router import StorageRouter

MARCH = datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)


def _file(name: str, content: bytes = b"%PDF-1.4 data") -> IncomingFile:
    return IncomingFile(filename=name, content=content, content_type="application/pdf")


def _build(analyzer, store=None, documents=None, contacts=None, concurrency=4):
    config = PipelineConfig(upload_retry_delay_ms=1, ingest_concurrency=concurrency)
    store = store or FakeObjectStore()
    documents = documents or FakeDocumentRepository()
    extractor = ContactExtractionService(contacts) if contacts is not None else None
    service = IngestionService(
        analyzer=analyzer,
        router=StorageRouter(store, config=config),
        documents=documents,
        contact_extractor=extractor,
        audit=AuditTrailService(),
        bus=EventBus(),
        config=config,
    )
    return service, store, documents


def _collect(service, files, rules=(), user_id="u1", **kwargs):
    async def run():
        updates = [u async for u in service.ingest_batch(files, list(rules), user_id, **kwargs)]
        await service.wait_for_background()
        return updates

    return asyncio.run(run())


def _by_name(files, placeholders, updates):
    by_id = {u.placeholder_id: u for u in updates}
    return {f.filename: by_id[p.id] for f, p in zip(files, placeholders)}


class TestPlaceholders:
    def test_one_analyzing_placeholder_per_file(self):
        service, _, _ = _build(FakeAnalyzer({}))
        files = [_file("a.pdf"), _file("b.pdf")]
        placeholders = service.create_placeholders(files, SourceChannel.EMAIL)
        assert [p.name for p in placeholders] == ["a.pdf", "b.pdf"]
        assert all(p.status == DocumentStatus.ANALYZING for p in placeholders)
        assert all(p.source_channel == SourceChannel.EMAIL for p in placeholders)
        assert len({p.id for p in placeholders}) == 2

    def test_placeholder_count_must_match(self):
        service, _, _ = _build(FakeAnalyzer({}))

        async def run():
            return [u async for u in service.ingest_batch([_file("a.pdf")], [], "u1", placeholders=[])]

        with pytest.raises(ValueError):
            asyncio.run(run())


class TestIngestBatch:
    def test_duplicate_against_existing_and_ok(self):
        existing = [Document(name="old.pdf", invoice_number="RE-100", status=DocumentStatus.OK)]
        analyzer = FakeAnalyzer({
            "a.pdf": AnalysisResult(vendor="Shell", invoice_number="re-100", total_amount=61.5, document_date=MARCH),
            "b.pdf": AnalysisResult(vendor="Bauhaus", invoice_number="B-7", total_amount=10.0, document_date=MARCH),
        })
        service, store, documents = _build(analyzer, documents=FakeDocumentRepository(existing))
        files = [_file("a.pdf"), _file("b.pdf")]
        placeholders = service.create_placeholders(files)

        updates = _collect(service, files, DEFAULT_RULES, placeholders=placeholders)
        result = _by_name(files, placeholders, updates)

        assert len(updates) == 2
        assert result["a.pdf"].document.status == DocumentStatus.POTENTIAL_DUPLICATE
        assert result["b.pdf"].document.status == DocumentStatus.OK
        assert len(store.uploads) == 2
        assert len(documents.inserted) == 2

    def test_classified_document_fields(self):
        analyzer = FakeAnalyzer({
            "tank.pdf": AnalysisResult(vendor="Shell", total_amount=61.5, vat_amount=9.82, document_date=MARCH,
                                       raw_text="Super E10", tax_category="Reisekosten"),
        })
        service, _, _ = _build(analyzer)
        (update,) = _collect(service, [_file("tank.pdf")], DEFAULT_RULES)
        doc = update.document

        assert update.ok
        assert doc.name == "re_shell_61,50€_03_2024.pdf"
        assert doc.tax_category == "Kraftstoff"
        assert doc.ai_suggested_tax_category == "Reisekosten"
        assert doc.storage_provider == StorageProvider.PRIMARY
        assert doc.file_url.startswith("https://primary.example/documents/u1/")
        assert (doc.year, doc.quarter) == (2024, 1)

    def test_same_batch_files_are_not_compared_with_each_other(self):
        analysis = AnalysisResult(vendor="Obeta", invoice_number="R-55", total_amount=12.0, document_date=MARCH)
        service, _, _ = _build(FakeAnalyzer({"a.pdf": analysis, "b.pdf": analysis}))
        updates = _collect(service, [_file("a.pdf"), _file("b.pdf")])
        assert [u.document.status for u in updates] == [DocumentStatus.OK, DocumentStatus.OK]

    def test_analysis_failure_marks_error_and_skips_upload(self):
        analyzer = FakeAnalyzer({"good.pdf": AnalysisResult(vendor="Aral")}, failing=["bad.pdf"])
        service, store, documents = _build(analyzer)
        files = [_file("bad.pdf"), _file("good.pdf")]
        placeholders = service.create_placeholders(files)

        result = _by_name(files, placeholders, _collect(service, files, placeholders=placeholders))

        bad = result["bad.pdf"]
        assert not bad.ok
        assert bad.stage == IngestStage.ERROR
        assert bad.document.status == DocumentStatus.ERROR
        assert "Analysis failed" in bad.error_message
        assert bad.document.error_message == bad.error_message
        assert result["good.pdf"].document.status == DocumentStatus.OK
        assert len(store.uploads) == 1
        assert [d.name for d in documents.inserted] == [result["good.pdf"].document.name]

    def test_routed_upload_failure_falls_back_to_primary(self):
        store = FakeObjectStore(failures=[FakeStorageError("gateway", status=502)])
        service, store, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Toom")}), store=store)

        (update,) = _collect(service, [_file("a.pdf")])

        assert update.ok
        assert len(store.uploads) == 2
        assert update.document.storage_provider == StorageProvider.PRIMARY
        assert update.document.storage_path == store.uploads[-1]

    def test_both_uploads_failing_without_url_is_error(self):
        store = FakeObjectStore(failures=[FakeStorageError("denied", status=403),
                                          FakeStorageError("denied", status=403)])
        service, store, documents = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Toom")}), store=store)

        (update,) = _collect(service, [_file("a.pdf")])

        assert update.document.status == DocumentStatus.ERROR
        assert update.error_message.startswith("Upload failed")
        assert documents.inserted == []

    def test_both_uploads_failing_keeps_placeholder_url(self):
        store = FakeObjectStore(failures=[FakeStorageError("denied", status=403),
                                          FakeStorageError("denied", status=403)])
        service, store, documents = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Toom")}), store=store)
        files = [_file("a.pdf")]
        placeholders = service.create_placeholders(files)
        placeholders[0].file_url = "https://local.example/preview/a.pdf"

        (update,) = _collect(service, files, placeholders=placeholders)

        assert update.document.status == DocumentStatus.OK
        assert update.document.file_url == "https://local.example/preview/a.pdf"
        assert update.document.storage_provider is None
        assert len(documents.inserted) == 1

    def test_cancelled_batch_reports_error_without_upload(self):
        service, store, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Toom")}))

        async def run():
            signal = asyncio.Event()
            signal.set()
            return [u async for u in service.ingest_batch([_file("a.pdf")], [], "u1", signal=signal)]

        (update,) = asyncio.run(run())
        assert update.document.status == DocumentStatus.ERROR
        assert update.error_message == "Upload cancelled"
        assert store.uploads == []


    def test_batch_signal_cancels_every_file(self):
        names = ["a.pdf", "b.pdf", "c.pdf"]
        service, store, documents = _build(FakeAnalyzer({n: AnalysisResult(vendor="Toom") for n in names}))

        async def run():
            signal = asyncio.Event()
            signal.set()
            return [u async for u in service.ingest_batch([_file(n) for n in names], [], "u1", signal=signal)]

        updates = asyncio.run(run())
        assert len(updates) == 3
        assert {u.error_message for u in updates} == {"Upload cancelled"}
        assert store.uploads == []
        assert documents.inserted == []
    def test_persist_failure_is_not_fatal(self):
        contacts = FakeContactRepository()
        service, store, _ = _build(
            FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Hellwig")}),
            documents=FakeDocumentRepository(fail_insert=True),
            contacts=contacts,
        )

        (update,) = _collect(service, [_file("a.pdf")])

        assert update.ok
        assert update.document.status == DocumentStatus.OK
        assert len(store.uploads) == 1
        assert contacts.writes == 0

    def test_concurrency_is_bounded(self):
        in_flight = {"now": 0, "max": 0}

        class SlowAnalyzer:
            async def analyze(self, file, rules):
                in_flight["now"] += 1
                in_flight["max"] = max(in_flight["max"], in_flight["now"])
                await asyncio.sleep(0.01)
                in_flight["now"] -= 1
                return AnalysisResult(vendor=file.filename)

        service, _, _ = _build(SlowAnalyzer(), concurrency=2)
        updates = _collect(service, [_file(f"{i}.pdf") for i in range(6)])

        assert len(updates) == 6
        assert in_flight["max"] <= 2

    def test_audit_trail_records_each_stage(self):
        service, _, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Obeta")}))
        (update,) = _collect(service, [_file("a.pdf")])

        assert service.audit.stages_for(update.placeholder_id) == [
            IngestStage.QUEUED,
            IngestStage.ANALYZING,
            IngestStage.DUPLICATE_CHECK,
            IngestStage.UPLOADING,
            IngestStage.CLASSIFYING,
            IngestStage.PERSISTING,
            IngestStage.DONE,
        ]

    def test_embedding_failure_is_ignored(self):
        class BrokenEmbedder:
            async def embed(self, text):
                raise RuntimeError("quota exceeded")

        service, _, documents = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="O2", raw_text="Mobilfunk")}))
        service.embedder = BrokenEmbedder()

        (update,) = _collect(service, [_file("a.pdf")])

        assert update.ok
        assert update.document.embedding is None
        assert IngestStage.EMBEDDING in service.audit.stages_for(update.placeholder_id)
        assert len(documents.inserted) == 1


class TestContactExtractionStage:
    def test_contacts_are_upserted_in_background(self):
        contacts = FakeContactRepository()
        analyzer = FakeAnalyzer({
            "a.pdf": AnalysisResult(vendor="Vodafone GmbH", raw_text="kontakt@vodafone.de"),
            "b.pdf": AnalysisResult(vendor="VODAFONE"),
        })
        service, _, _ = _build(analyzer, contacts=contacts)

        updates = _collect(service, [_file("a.pdf"), _file("b.pdf")])

        assert len(contacts.contacts) == 1
        (contact,) = contacts.contacts.values()
        assert sorted(contact.source_ids) == sorted(u.placeholder_id for u in updates)
        assert contact.email == "kontakt@vodafone.de"
        history = service.bus.get_history(event_type=EventType.CONTACT_UPSERTED)
        assert len(history) == 2

    def test_extraction_failure_never_changes_document(self):
        class BrokenRepo(FakeContactRepository):
            async def list(self, user_id):
                raise RuntimeError("timeout")

        service, _, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Esso")}), contacts=BrokenRepo())

        (update,) = _collect(service, [_file("a.pdf")])

        assert update.document.status == DocumentStatus.OK
        failures = service.bus.get_history(event_type=EventType.CONTACT_EXTRACTION_FAILED)
        assert [e.data["document_id"] for e in failures] == [update.placeholder_id]


class TestRuleSuggestion:
    def test_suggested_once_per_batch(self):
        analyzer = FakeAnalyzer({
            f"{i}.pdf": AnalysisResult(vendor=f"Café {i}", tax_category="Bewirtung") for i in range(3)
        })
        service, _, _ = _build(analyzer)
        received = []

        _collect(service, [_file(f"{i}.pdf") for i in range(3)], on_rule_suggested=received.append)

        assert len(received) == 1
        assert received[0].tax_category == "Bewirtung"
        assert len(service.bus.get_history(event_type=EventType.RULE_SUGGESTED)) == 1

    def test_uncategorized_documents_are_not_suggested(self):
        service, _, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Unbekannt")}))
        received = []
        _collect(service, [_file("a.pdf")], on_rule_suggested=received.append)
        assert received == []

    def test_existing_vendor_rule_suppresses_suggestion(self):
        service, _, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Hornbach")}))
        received = []
        _collect(service, [_file("a.pdf")], DEFAULT_RULES, on_rule_suggested=received.append)
        assert received == []

    def test_async_callback_is_awaited(self):
        service, _, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Jet", tax_category="Fuhrpark")}))
        received = []

        async def callback(suggestion):
            await asyncio.sleep(0)
            received.append(suggestion.vendor)

        _collect(service, [_file("a.pdf")], on_rule_suggested=callback)
        assert received == ["Jet"]

    def test_failing_callback_does_not_stop_the_batch(self):
        names = [f"{i}.pdf" for i in range(3)]
        analyzer = FakeAnalyzer({n: AnalysisResult(vendor="Globus", tax_category="Material/Waren") for n in names})
        service, _, documents = _build(analyzer)

        def callback(suggestion):
            raise RuntimeError("notification channel closed")

        updates = _collect(service, [_file(n) for n in names], on_rule_suggested=callback)

        assert len(updates) == 3
        assert all(u.document.status == DocumentStatus.OK for u in updates)
        assert len(documents.inserted) == 3
        assert len(service.bus.get_history(event_type=EventType.RULE_SUGGESTED)) == 1

    def test_failing_async_callback_is_detached(self):
        service, _, _ = _build(FakeAnalyzer({"a.pdf": AnalysisResult(vendor="Jet", tax_category="Fuhrpark")}))

        async def callback(suggestion):
            await asyncio.sleep(0)
            raise RuntimeError("notification channel closed")

        (update,) = _collect(service, [_file("a.pdf")], on_rule_suggested=callback)

        assert update.document.status == DocumentStatus.OK
        assert not service._background
