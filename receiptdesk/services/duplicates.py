"""Duplicate detection and lifecycle status for freshly analyzed documents."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from receiptdesk.models.documents import AnalysisResult, Document, DocumentStatus

MIN_INVOICE_NUMBER_LENGTH = 3


def _clean_invoice_number(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def same_invoice_number(left: Optional[str], right: Optional[str]) -> bool:
    a, b = _clean_invoice_number(left), _clean_invoice_number(right)
    if len(a) < MIN_INVOICE_NUMBER_LENGTH or len(b) < MIN_INVOICE_NUMBER_LENGTH:
        return False
    return a == b


def same_amount_and_day(
    amount: Optional[float],
    day: Optional[datetime],
    other_amount: Optional[float],
    other_day: Optional[datetime],
) -> bool:
    if not amount or not other_amount or day is None or other_day is None:
        return False
    return f"{amount:.2f}" == f"{other_amount:.2f}" and day.date() == other_day.date()


def find_duplicate(analysis: AnalysisResult, existing: Iterable[Document]) -> Optional[Document]:
    for doc in existing:
        if same_invoice_number(analysis.invoice_number, doc.invoice_number):
            return doc
        if same_amount_and_day(analysis.total_amount, analysis.document_date, doc.total_amount, doc.date):
            return doc
    return None


def resolve_status(analysis: AnalysisResult, existing: Iterable[Document]) -> DocumentStatus:
    """Pick the lifecycle status for a new analysis result.

    Checked in order, first hit wins: matching invoice number or matching
    amount on the same day against any known document, then order
    confirmations without an invoice, then email bodies without an invoice.
    """
    if find_duplicate(analysis, existing) is not None:
        return DocumentStatus.POTENTIAL_DUPLICATE
    if analysis.is_order_confirmation and not analysis.is_invoice:
        return DocumentStatus.MISSING_INVOICE
    if analysis.is_email_body and not analysis.is_invoice:
        return DocumentStatus.SCREENSHOT
    return DocumentStatus.OK
