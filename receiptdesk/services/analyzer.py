"""Document analyzers.

``LLMDocumentAnalyzer`` sends PDFs and images to Claude as document/image
content blocks and plain-text files inline, then maps the returned JSON onto
an :class:`AnalysisResult`. ``OfflineDocumentAnalyzer`` is a deterministic
keyword/regex extractor used when no API key is configured and in tests.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests

from receiptdesk.models.contacts import Contact, ContactType
from receiptdesk.models.documents import AnalysisResult, IncomingFile, InvoiceDirection
from receiptdesk.models.rules import Rule
from receiptdesk.services.errors import AnalysisError, LLMError

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
MAX_TEXT_CHARS = 16000

_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp")
_TEXT_EXTENSIONS = (".txt", ".eml", ".csv", ".md", ".html")


class DocumentAnalyzer(Protocol):
    async def analyze(self, file: IncomingFile, rules: Iterable[Rule]) -> AnalysisResult: ...


def is_pdf(file: IncomingFile) -> bool:
    return "pdf" in file.content_type.lower() or file.filename.lower().endswith(".pdf")


def is_image(file: IncomingFile) -> bool:
    return file.content_type.lower().startswith("image/") or file.filename.lower().endswith(_IMAGE_EXTENSIONS)


def is_text(file: IncomingFile) -> bool:
    content_type = file.content_type.lower()
    return (
        content_type.startswith("text/")
        or content_type == "message/rfc822"
        or file.filename.lower().endswith(_TEXT_EXTENSIONS)
    )


def decode_text(file: IncomingFile) -> str:
    return file.content.decode("utf-8", errors="replace")


def parse_amount(value: Any) -> Optional[float]:
    """Accept numbers and both ``1.234,56`` and ``1,234.56`` style strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = re.sub(r"[^0-9,.\-]", "", str(value))
    if not text:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed: Optional[datetime] = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in ("%d.%m.%Y", "%d.%m.%y"):
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _direction(value: Any) -> Optional[InvoiceDirection]:
    if not value:
        return None
    try:
        return InvoiceDirection(str(value).strip().lower())
    except ValueError:
        return None


def result_from_payload(payload: Dict[str, Any], fallback_text: str = "") -> AnalysisResult:
    """Map loosely typed analyzer JSON onto an AnalysisResult."""
    return AnalysisResult(
        is_invoice=bool(payload.get("is_invoice", True)),
        is_order_confirmation=bool(payload.get("is_order_confirmation", False)),
        is_email_body=bool(payload.get("is_email_body", False)),
        document_date=parse_date(payload.get("document_date") or payload.get("invoice_date")),
        raw_text=str(payload.get("text_content") or payload.get("raw_text") or fallback_text),
        vendor=(payload.get("vendor") or None),
        total_amount=parse_amount(payload.get("total_amount")),
        vat_amount=parse_amount(payload.get("vat_amount") or payload.get("tax_amount")),
        invoice_number=(str(payload["invoice_number"]) if payload.get("invoice_number") else None),
        invoice_direction=_direction(payload.get("invoice_direction")),
        tax_category=(payload.get("tax_category") or None),
    )


class LLMDocumentAnalyzer:
    """Claude-backed analyzer over the Anthropic Messages API."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout: Optional[int] = None):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.model = model or os.getenv("ANTHROPIC_MODEL", DEFAULT_MODEL)
        self.timeout = timeout or int(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    async def analyze(self, file: IncomingFile, rules: Iterable[Rule]) -> AnalysisResult:
        categories = sorted({rule.result_category for rule in rules})
        try:
            payload = await asyncio.to_thread(self._analyze_sync, file, categories)
        except (LLMError, requests.RequestException, ValueError) as exc:
            raise AnalysisError(file.filename, str(exc)) from exc
        return result_from_payload(payload, decode_text(file) if is_text(file) else "")

    async def extract_contacts(self, text: str) -> List[Contact]:
        if not text.strip():
            return []
        try:
            payload = await asyncio.to_thread(self._call, [{"type": "text", "text": _contact_prompt(text)}], 1000)
        except (LLMError, requests.RequestException, ValueError) as exc:
            logger.warning("Contact extraction via LLM failed: %s", exc)
            return []
        items = payload.get("contacts") if isinstance(payload, dict) else payload
        contacts = []
        for item in items or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            contacts.append(
                Contact(
                    name=str(item["name"]),
                    type=_contact_type(item.get("type")),
                    email=item.get("email") or None,
                    phone=item.get("phone") or None,
                )
            )
        return contacts

    def _analyze_sync(self, file: IncomingFile, categories: List[str]) -> Dict[str, Any]:
        blocks: List[Dict[str, Any]] = []
        text = ""
        encoded = base64.b64encode(file.content).decode("ascii")
        if is_pdf(file):
            blocks.append({
                "type": "document",
                "source": {"type": "base64", "media_type": "application/pdf", "data": encoded},
            })
        elif is_image(file):
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": file.content_type, "data": encoded},
            })
        else:
            text = decode_text(file)[:MAX_TEXT_CHARS]
        blocks.append({"type": "text", "text": _analysis_prompt(file.filename, text, categories)})
        logger.info("Calling Claude for %s (%d content blocks)", file.filename, len(blocks))
        return self._call(blocks, 2000)

    def _call(self, blocks: List[Dict[str, Any]], max_tokens: int) -> Any:
        if not self.api_key:
            raise LLMError("Anthropic key not configured")
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": 0.1,
            "messages": [{"role": "user", "content": blocks}],
        }
        response = requests.post(ANTHROPIC_URL, headers=headers, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return _parse_llm_json(_extract_message_text(response.json()))


def _contact_type(value: Any) -> ContactType:
    try:
        return ContactType(str(value or "").strip().lower())
    except ValueError:
        return ContactType.OTHER


def _analysis_prompt(filename: str, text: str, categories: List[str]) -> str:
    content = f"DOCUMENT TEXT:\n{text}" if text else "Please analyze the attached document."
    known = ", ".join(categories) if categories else "none"
    return f"""You are a bookkeeping assistant for a German small business. Analyze the document "{filename}".

{content}

Return a JSON object with these fields:
- is_invoice: true if this is an invoice (Rechnung)
- is_order_confirmation: true if this is an order confirmation without an invoice
- is_email_body: true if this is an email body or screenshot rather than a document
- document_date: issue date (YYYY-MM-DD)
- text_content: the full extracted text
- vendor: issuing company name
- total_amount: gross total (number)
- vat_amount: VAT amount (number or null)
- invoice_number: invoice number or null
- invoice_direction: "incoming" for bills received, "outgoing" for invoices issued
- tax_category: bookkeeping category; prefer one of: {known}

Use null for anything not clearly present. Return ONLY valid JSON."""


def _contact_prompt(text: str) -> str:
    return f"""Extract contact information (company or person) from the text below.
Return a JSON object {{"contacts": [{{"name": "...", "type": "creditor|insurer|vendor|other", "email": null, "phone": null}}]}}.

TEXT:
{text[:MAX_TEXT_CHARS]}"""


def _extract_message_text(data: Dict[str, Any]) -> str:
    content = data.get("content", [])
    if isinstance(content, list):
        parts = [c.get("text", "") for c in content if isinstance(c, dict)]
        return "\n".join([p for p in parts if p])
    return str(content or "")


def _parse_llm_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
        raise LLMError("LLM response was not valid JSON")


_AMOUNT = re.compile(r"(?:gesamtbetrag|gesamt|summe|total|betrag)\D{0,20}?(\d[\d.,]*\d)", re.IGNORECASE)
_VAT = re.compile(r"\b(?:mwst|ust|vat)\b\D{0,20}?(\d[\d.,]*\d)", re.IGNORECASE)
_INVOICE_NO = re.compile(
    r"(?:rechnungsnummer|rechnungs-?nr\.?|invoice\s*(?:no\.?|number)|re-?nr\.?)\s*[:#]?\s*([A-Za-z0-9][A-Za-z0-9/\-]*)",
    re.IGNORECASE,
)
_DATE = re.compile(r"\b(\d{2}\.\d{2}\.\d{4}|\d{4}-\d{2}-\d{2})\b")


class OfflineDocumentAnalyzer:
    """Deterministic analyzer for plain-text documents. Binary files yield an empty result."""

    async def analyze(self, file: IncomingFile, rules: Iterable[Rule]) -> AnalysisResult:
        if not is_text(file):
            return AnalysisResult(is_invoice=is_pdf(file) or is_image(file))
        return self.analyze_text(decode_text(file), file.filename)

    def analyze_text(self, text: str, filename: str = "") -> AnalysisResult:
        lower = text.lower()
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        vendor = None
        for line in lines:
            if ":" not in line:
                vendor = line
                break
        amount = _AMOUNT.search(text)
        vat = _VAT.search(text)
        number = _INVOICE_NO.search(text)
        date = _DATE.search(text)
        is_invoice = "rechnung" in lower or "invoice" in lower
        is_order = "auftragsbestätigung" in lower or "bestellbestätigung" in lower or "order confirmation" in lower
        is_email = filename.lower().endswith(".eml") or lower.startswith(("from:", "von:"))
        return AnalysisResult(
            is_invoice=is_invoice and not is_order,
            is_order_confirmation=is_order,
            is_email_body=is_email,
            document_date=parse_date(date.group(1)) if date else None,
            raw_text=text,
            vendor=vendor,
            total_amount=parse_amount(amount.group(1)) if amount else None,
            vat_amount=parse_amount(vat.group(1)) if vat else None,
            invoice_number=number.group(1) if number else None,
        )


def default_analyzer() -> DocumentAnalyzer:
    llm = LLMDocumentAnalyzer()
    if llm.is_available:
        return llm
    logger.info("ANTHROPIC_API_KEY not set, using the offline analyzer")
    return OfflineDocumentAnalyzer()
