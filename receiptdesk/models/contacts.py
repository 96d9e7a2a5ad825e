"""Contact models."""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from receiptdesk.models.base import RDBaseModel


class ContactType(str, Enum):
    CREDITOR = "creditor"
    INSURER = "insurer"
    VENDOR = "vendor"
    OTHER = "other"


def new_contact_id() -> str:
    return f"contact-{uuid.uuid4().hex[:12]}"


class Contact(RDBaseModel):
    """A deduplicated counterpart. ``id`` is empty on probes that were never stored."""

    id: str = ""
    name: str = ""
    type: Optional[ContactType] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    source_ids: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    last_document_date: Optional[datetime] = None
    notes: Optional[str] = None
    ai_summary: Optional[str] = None
