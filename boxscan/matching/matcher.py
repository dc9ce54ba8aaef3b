"""
matcher.py — Deterministic invoice item matching for OCR product names.

Pure function module — no I/O, no session mutation.
Entry point: match_invoice_item(product_name, invoice_items) -> MatchResult

Rules, in priority order. Each rule is tried against every invoice item
before the next rule is considered, so a weaker rule never beats a stronger
one on a different item:
  1. exact_native        name == item_name_hebrew
  2. substring_native    name in item_name_hebrew, or item_name_hebrew in name
                         (OCR truncation / extra words on the label)
  3. casefold_secondary  name.casefold() == item_name_english.casefold()
  4. normalized          normalize_name(name) equals the normalized Hebrew or English name
                         (punctuation / spacing noise)

Invoice item names are assumed distinct within a session; the first item that
satisfies the winning rule is returned.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from boxscan.matching.text import normalize_name
from boxscan.sessions.schemas import InvoiceItem


@dataclass(frozen=True)
class MatchResult:
    item: Optional[InvoiceItem]
    rule: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.item is not None


UNMATCHED = MatchResult(item=None)


def _exact_native(name: str, item: InvoiceItem) -> bool:
    return name == item.item_name_hebrew


def _substring_native(name: str, item: InvoiceItem) -> bool:
    native = item.item_name_hebrew
    if not native:
        return False
    return name in native or native in name


def _casefold_secondary(name: str, item: InvoiceItem) -> bool:
    if not item.item_name_english:
        return False
    return name.casefold() == item.item_name_english.strip().casefold()


def _normalized(name: str, item: InvoiceItem) -> bool:
    target = normalize_name(name)
    if not target:
        return False
    return target in (normalize_name(item.item_name_hebrew), normalize_name(item.item_name_english))


_RULES: list[tuple[str, Callable[[str, InvoiceItem], bool]]] = [
    ("exact_native", _exact_native),
    ("substring_native", _substring_native),
    ("casefold_secondary", _casefold_secondary),
    ("normalized", _normalized),
]


def match_invoice_item(
    product_name: Optional[str],
    invoice_items: Sequence[InvoiceItem],
) -> MatchResult:
    """Return the invoice item matching product_name, or UNMATCHED."""
    name = (product_name or "").strip()
    if not name:
        return UNMATCHED
    for rule_name, rule in _RULES:
        for item in invoice_items:
            if rule(name, item):
                return MatchResult(item=item, rule=rule_name)
    return UNMATCHED
