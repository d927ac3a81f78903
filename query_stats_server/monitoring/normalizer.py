"""
Statement text normalization.

Produces the fallback grouping key used when the engine's native query hash is
missing or differs between the live view and the historical log.

Examples:
    SELECT * FROM t WHERE id IN (?, ?, ?)   → SELECT * FROM t WHERE id IN (?)
    SELECT /* app:web */  1                  → SELECT 1
"""

import re

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
# ?, ?, ?   or   $1, $2, $3   (mixed runs too)
_PLACEHOLDER_RUN = re.compile(r"(?:\?|\$\d+)(?:\s*,\s*(?:\?|\$\d+))+")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(query) -> str:
    """
    Canonical grouping form of a statement.

    Never raises. normalize_query(normalize_query(x)) == normalize_query(x).
    """
    if query is None:
        return ""
    text = str(query)

    # comments first: "?, /* x */ ?" must still collapse
    text = _BLOCK_COMMENT.sub(" ", text)
    text = _PLACEHOLDER_RUN.sub("?", text)
    return _WHITESPACE.sub(" ", text).strip()
