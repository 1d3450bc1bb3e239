"""
goodflows.search.similarity — Description similarity for dedup and
pattern recommendation.

The score is token-set Jaccard::

    tokens(s)   = { lowercase runs of [a-z0-9] in s, after splitting
                    camelCase / PascalCase / acronym boundaries }
    jaccard(a, b) = |tokens(a) ∩ tokens(b)| / |tokens(a) ∪ tokens(b)|

and 0.0 when either side has no tokens.  Identifiers therefore match
their prose form: ``"getUserById"`` tokenizes to
``{"get", "user", "by", "id"}``.

Examples:
    jaccard("SQL injection in login", "sql injection in login")  -> 1.0
    jaccard("missing null check", "SQL injection in login")      -> 0.0
"""

from __future__ import annotations

import re
from typing import FrozenSet, Iterable, Union

# camelCase / PascalCase boundary: lowercase or digit followed by uppercase
_CAMEL_SPLIT = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# Acronym boundary: "HTTPResponse" -> "HTTP" + "Response"
_ACRONYM_SPLIT = re.compile(r"(?<=[A-Z])(?=[A-Z][a-z])")

_WORD_RE = re.compile(r"[a-z0-9]+")

TextLike = Union[str, Iterable[str]]


def tokenize(text: TextLike) -> FrozenSet[str]:
    """Token set of a string, or the union over an iterable of strings."""
    if text is None:
        return frozenset()
    if not isinstance(text, str):
        out: set = set()
        for part in text:
            out |= tokenize(part)
        return frozenset(out)

    spaced = _ACRONYM_SPLIT.sub(" ", _CAMEL_SPLIT.sub(" ", text))
    return frozenset(_WORD_RE.findall(spaced.lower()))


def jaccard(a: TextLike, b: TextLike) -> float:
    """Jaccard similarity of the token sets of *a* and *b* (0.0..1.0)."""
    ta = tokenize(a)
    tb = tokenize(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)
