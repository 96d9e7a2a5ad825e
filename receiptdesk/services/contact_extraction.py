"""Derive contact probes from a persisted document and merge them into the contact list."""
from __future__ import annotations

import logging
import re
from typing import List, Optional

from receiptdesk.models.contacts import Contact, ContactType
from receiptdesk.models.documents import Document, InvoiceDirection
from receiptdesk.services.contact_dedupe import dedupe_contacts, upsert_contact_dedupe
from receiptdesk.services.errors import ContactExtractionError
from receiptdesk.services.repository import ContactRepository

logger = logging.getLogger(__name__)

_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE = re.compile(r"(?:tel\.?|telefon|phone|fon)\s*[:.]?\s*(\+?[\d][\d /()-]{5,}\d)", re.IGNORECASE)


def probes_from_document(document: Document) -> List[Contact]:
    """One probe per counterpart found on the document.

    The vendor becomes a probe carrying the first e-mail address and phone
    number found in the text. Documents without a vendor yield no probes.
    """
    vendor = (document.vendor or "").strip()
    if not vendor:
        return []
    text = document.raw_text or ""
    email = _EMAIL.search(text)
    phone = _PHONE.search(text)
    contact_type = ContactType.VENDOR if document.invoice_direction == InvoiceDirection.INCOMING else ContactType.OTHER
    tags = [document.tax_category] if document.tax_category else []
    return [
        Contact(
            name=vendor,
            type=contact_type,
            email=email.group(0) if email else None,
            phone=phone.group(1).strip() if phone else None,
            source_ids=[document.id],
            tags=tags,
            last_document_date=document.date,
        )
    ]


class ContactExtractionService:
    """Runs after a document was persisted. Never touches the document itself."""

    def __init__(self, contacts: ContactRepository, llm=None) -> None:
        self.contacts = contacts
        self.llm = llm

    async def _llm_probes(self, document: Document) -> List[Contact]:
        extract = getattr(self.llm, "extract_contacts", None)
        if extract is None or not document.raw_text:
            return []
        found = await extract(document.raw_text)
        return [
            contact.model_copy(update={"source_ids": [document.id], "last_document_date": document.date})
            for contact in found
        ]

    async def extract(self, user_id: str, document: Document) -> List[Contact]:
        try:
            probes = probes_from_document(document) + await self._llm_probes(document)
            stored: List[Contact] = []
            for probe in dedupe_contacts(probes):
                stored.append(await upsert_contact_dedupe(self.contacts, user_id, probe))
        except ContactExtractionError:
            raise
        except Exception as exc:
            raise ContactExtractionError(document.id, str(exc)) from exc
        logger.info("Extracted %d contact(s) from %s", len(stored), document.id)
        return stored


def summarize(contacts: List[Contact]) -> Optional[str]:
    if not contacts:
        return None
    return ", ".join(contact.name for contact in contacts)
