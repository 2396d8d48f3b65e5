"""Text normalisation utilities."""
from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"[ \t\f\v]+")
_MULTIPLE_NEWLINES_RE = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_LEADING_SPACE_RE = re.compile(r"\n[ \t]+")

# Drawing title blocks often use typographic prime and quote marks for feet and
# inches; the scale patterns only understand the ASCII forms.
_QUOTE_TRANSLATION = str.maketrans(
    {
        "′": "'",
        "’": "'",
        "‘": "'",
        "´": "'",
        "″": '"',
        "“": '"',
        "”": '"',
    }
)


def normalize_text(text: str) -> str:
    """Normalise whitespace, quote marks and Unicode representation."""

    normalized = unicodedata.normalize("NFC", text)
    normalized = normalized.translate(_QUOTE_TRANSLATION)
    normalized = normalized.replace("\r\n", "\n").replace("\r", "\n")
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    normalized = _TRAILING_SPACE_RE.sub("\n", normalized)
    normalized = _LEADING_SPACE_RE.sub("\n", normalized)
    normalized = _MULTIPLE_NEWLINES_RE.sub("\n\n", normalized)
    return normalized.strip()


def fold_case(text: str) -> str:
    """Case-fold text for pattern matching; sheet conventions are upper case."""

    return text.upper()
