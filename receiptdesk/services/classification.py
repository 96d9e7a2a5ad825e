"""Rule-based classification of analyzed documents.

Rules are evaluated in list order and the first rule whose keywords occur in
the selected field wins. User rules therefore always override whatever the AI
analyzer suggested; when no rule matches the analyzer's suggestion is kept.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from receiptdesk.models.documents import AnalysisResult, InvoiceDirection
from receiptdesk.models.rules import ConditionType, Rule, RuleSuggestion

UNCATEGORIZED = "uncategorized"


DEFAULT_RULES: List[Rule] = [
    Rule(id="sys-1a", condition_type=ConditionType.TEXT_CONTENT, condition_value="ZOE Solar",
         invoice_direction=InvoiceDirection.OUTGOING, result_category="Photovoltaik"),
    Rule(id="sys-1b", condition_type=ConditionType.TEXT_CONTENT, condition_value="ZOE Solar, 19% MwSt, 19.00% USt",
         invoice_direction=InvoiceDirection.OUTGOING, result_category="Einnahmen"),
    Rule(id="sys-2", condition_type=ConditionType.VENDOR, condition_value="Obeta, Bauhaus, Hornbach, Hellwig, Toom",
         invoice_direction=InvoiceDirection.INCOMING, result_category="Material/Waren"),
    Rule(id="sys-3", condition_type=ConditionType.VENDOR, condition_value="Shell, Aral, Esso, Jet, Total",
         invoice_direction=InvoiceDirection.INCOMING, result_category="Kraftstoff"),
    Rule(id="sys-4", condition_type=ConditionType.TEXT_CONTENT, condition_value="Benzin, Diesel",
         invoice_direction=InvoiceDirection.INCOMING, result_category="Kraftstoff"),
    Rule(id="sys-5", condition_type=ConditionType.VENDOR, condition_value="Telekom, Vodafone, O2",
         invoice_direction=InvoiceDirection.INCOMING, result_category="Kommunikation"),
    Rule(id="sys-6", condition_type=ConditionType.TEXT_CONTENT, condition_value="Büromiete",
         invoice_direction=InvoiceDirection.INCOMING, result_category="Miete"),
]


@dataclass
class Classification:
    invoice_direction: InvoiceDirection
    tax_category: str
    matched_rule_id: Optional[str] = None

    @property
    def is_categorized(self) -> bool:
        return self.tax_category != UNCATEGORIZED


def _target_for(rule: Rule, analysis: AnalysisResult) -> str:
    if rule.condition_type == ConditionType.VENDOR:
        return (analysis.vendor or "").lower()
    return (analysis.raw_text or "").lower()


def find_matching_rule(analysis: AnalysisResult, rules: Iterable[Rule]) -> Optional[Rule]:
    for rule in rules:
        target = _target_for(rule, analysis)
        if any(keyword in target for keyword in rule.keywords()):
            return rule
    return None


def classify(analysis: AnalysisResult, rules: Iterable[Rule]) -> Classification:
    rule = find_matching_rule(analysis, rules)
    if rule is not None:
        return Classification(
            invoice_direction=rule.invoice_direction,
            tax_category=rule.result_category,
            matched_rule_id=rule.id,
        )
    return Classification(
        invoice_direction=analysis.invoice_direction or InvoiceDirection.INCOMING,
        tax_category=(analysis.tax_category or "").strip() or UNCATEGORIZED,
    )


def apply_rules(analysis: AnalysisResult, rules: Iterable[Rule]) -> AnalysisResult:
    """Return a copy of ``analysis`` with direction and category resolved."""
    result = classify(analysis, rules)
    return analysis.model_copy(
        update={"invoice_direction": result.invoice_direction, "tax_category": result.tax_category}
    )


def rule_exists_for(rules: Iterable[Rule], suggestion: RuleSuggestion) -> bool:
    """True when a vendor rule already maps the suggested vendor to the suggested category."""
    vendor = suggestion.vendor.strip().lower()
    category = suggestion.tax_category.strip().lower()
    for rule in rules:
        if rule.condition_type != ConditionType.VENDOR:
            continue
        if vendor in rule.keywords() and rule.result_category.strip().lower() == category:
            return True
    return False
