"""
text.py — String normalization for fuzzy product-name comparison.
"""
import re

# Keep only English letters, digits and the Hebrew block (U+0590–U+05FF)
_NON_NAME_CHARS = re.compile(r"[^a-z0-9\u0590-\u05ff]")


def normalize_name(value: str | None) -> str:
    """
    Lowercase and drop spaces, punctuation and symbols.

    "Meatballs - Red Base"  -> "meatballsredbase"
    "קציצות ברוטב. אדום"    -> "קציצותברוטבאדום"
    """
    if not value:
        return ""
    return _NON_NAME_CHARS.sub("", value.lower())
