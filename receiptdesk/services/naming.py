"""Suggested archive file names for analyzed receipts."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from receiptdesk.models.documents import AnalysisResult

UNKNOWN_VENDOR = "unbekannt"
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def suggested_file_name(analysis: AnalysisResult, extension: str, fallback_date: Optional[datetime] = None) -> str:
    """``re_<vendor>_<amount>€_<MM>_<YYYY>.<ext>``

    >>> suggested_file_name(AnalysisResult(vendor="Shell AG", total_amount=61.5,
    ...                     document_date=datetime(2024, 3, 2)), "pdf")
    're_shellag_61,50€_03_2024.pdf'
    """
    moment = analysis.document_date or fallback_date or datetime.now()
    vendor = _NON_ALNUM.sub("", analysis.vendor or "").lower() or UNKNOWN_VENDOR
    amount = f"{analysis.total_amount or 0:.2f}".replace(".", ",")
    ext = (extension or "dat").lstrip(".")
    return f"re_{vendor}_{amount}€_{moment.month:02d}_{moment.year}.{ext}"
