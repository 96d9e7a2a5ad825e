"""Classification rule models."""
from __future__ import annotations

import uuid
from enum import Enum
from typing import List

from pydantic import Field

from receiptdesk.models.base import RDBaseModel
from receiptdesk.models.documents import InvoiceDirection


class ConditionType(str, Enum):
    VENDOR = "vendor"
    TEXT_CONTENT = "textContent"


class Rule(RDBaseModel):
    id: str = Field(default_factory=lambda: f"rule-{uuid.uuid4().hex[:8]}")
    condition_type: ConditionType
    condition_value: str = Field(..., description="Comma-separated keywords, OR-matched")
    invoice_direction: InvoiceDirection = InvoiceDirection.INCOMING
    result_category: str = Field(..., min_length=1)

    def keywords(self) -> List[str]:
        return [token.strip().lower() for token in self.condition_value.split(",") if token.strip()]


class RuleSuggestion(RDBaseModel):
    vendor: str
    tax_category: str
    invoice_direction: InvoiceDirection = InvoiceDirection.INCOMING
