"""Find-or-create for contacts with non-destructive merging.

A probe matches an existing contact when the normalized names, the emails
(case-insensitive) or the normalized phone numbers agree. Merges never
overwrite a populated field; only ``last_document_date`` moves forward.

The list read and the write in :func:`upsert_contact_dedupe` are not
transactional. Two concurrent upserts of the same new contact can both miss
and create two rows.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from receiptdesk.models.contacts import Contact, ContactType, new_contact_id
from receiptdesk.services.normalizer import normalize_name, normalize_phone
from receiptdesk.services.repository import ContactRepository

logger = logging.getLogger(__name__)

DEFAULT_CONTACT_NAME = "Contact"


def _union(left: Sequence[str], right: Sequence[str]) -> List[str]:
    merged: List[str] = []
    for item in list(left or []) + list(right or []):
        if item not in merged:
            merged.append(item)
    return merged


def _latest(left: Optional[datetime], right: Optional[datetime]) -> Optional[datetime]:
    dates = [d for d in (left, right) if d is not None]
    if not dates:
        return None
    return max(dates)


def matches(contact: Contact, probe: Contact) -> bool:
    name = normalize_name(probe.name)
    email = (probe.email or "").strip().lower()
    phone = normalize_phone(probe.phone)
    if name and normalize_name(contact.name) == name:
        return True
    if email and contact.email and contact.email.strip().lower() == email:
        return True
    if phone and contact.phone and normalize_phone(contact.phone) == phone:
        return True
    return False


def find_existing(all_contacts: Iterable[Contact], probe: Contact) -> Optional[Contact]:
    for contact in all_contacts:
        if matches(contact, probe):
            return contact
    return None


def merge_contacts(existing: Contact, incoming: Contact) -> Contact:
    return Contact(
        id=existing.id,
        name=existing.name or incoming.name or DEFAULT_CONTACT_NAME,
        type=existing.type or incoming.type or ContactType.OTHER,
        email=existing.email or incoming.email,
        phone=existing.phone or incoming.phone,
        source_ids=_union(existing.source_ids, incoming.source_ids),
        tags=_union(existing.tags, incoming.tags),
        last_document_date=_latest(existing.last_document_date, incoming.last_document_date),
        notes=existing.notes or incoming.notes,
        ai_summary=existing.ai_summary or incoming.ai_summary,
    )


def new_contact_from(probe: Contact) -> Contact:
    return probe.model_copy(
        update={
            "id": probe.id or new_contact_id(),
            "name": probe.name or DEFAULT_CONTACT_NAME,
            "type": probe.type or ContactType.OTHER,
            "source_ids": _union(probe.source_ids, []),
            "tags": _union(probe.tags, []),
        }
    )


async def upsert_contact_dedupe(repo: ContactRepository, user_id: str, probe: Contact) -> Contact:
    """Merge ``probe`` into its match or create it. Exactly one write per call."""
    all_contacts = await repo.list(user_id)
    existing = find_existing(all_contacts, probe)
    if existing is not None:
        logger.debug("Merging contact probe '%s' into %s", probe.name, existing.id)
        return await repo.upsert(user_id, merge_contacts(existing, probe))
    return await repo.upsert(user_id, new_contact_from(probe))


def dedupe_contacts(probes: Iterable[Contact]) -> List[Contact]:
    """Collapse a list of probes in memory using the same matching rules."""
    result: List[Contact] = []
    for probe in probes:
        for index, current in enumerate(result):
            if matches(current, probe):
                result[index] = current.model_copy(
                    update={
                        "email": current.email or probe.email,
                        "phone": current.phone or probe.phone,
                        "source_ids": _union(current.source_ids, probe.source_ids),
                        "tags": _union(current.tags, probe.tags),
                        "last_document_date": _latest(current.last_document_date, probe.last_document_date),
                    }
                )
                break
        else:
            result.append(probe.model_copy(update={"source_ids": list(probe.source_ids)}))
    return result
