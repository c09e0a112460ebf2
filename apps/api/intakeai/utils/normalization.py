"""Text normalization utilities for deterministic clinical text scanning."""

import re
import unicodedata

# Keep hyphens and apostrophes ("self-harm", "can't"); everything else
# that is not a word character becomes a separator.
_NON_WORD_RE = re.compile(r"[^\w\s'\-]+", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_clinical_text(value: str | None) -> str:
    """
    Normalize free text for rule matching.

    - Unicode NFKC (folds full-width / compatibility characters)
    - Case-folded
    - Punctuation other than ``-`` and ``'`` replaced by spaces
    - Whitespace collapsed and trimmed
    """
    if not value:
        return ""
    text = unicodedata.normalize("NFKC", value).casefold()
    text = text.replace("’", "'")
    text = _NON_WORD_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()
