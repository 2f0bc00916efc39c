"""Name normalization shared by resolution, storage and query lookup."""

import re

LEADING_ARTICLES = ("the", "a", "an")

_WHITESPACE = re.compile(r"\s+")
_ARTICLE = re.compile(r"^(?:%s)\s+" % "|".join(LEADING_ARTICLES))


def normalize_name(text: str) -> str:
    """Lowercase, trim, collapse whitespace and strip one leading article.

    An article that is the whole string is kept, so "The" stays "the".

    >>> normalize_name("  The  Brisket ")
    'brisket'
    """
    collapsed = _WHITESPACE.sub(" ", text.strip().lower())
    stripped = _ARTICLE.sub("", collapsed, count=1)
    return stripped or collapsed


def name_tokens(text: str) -> frozenset[str]:
    """Return the set of word tokens in a normalized name."""
    return frozenset(re.findall(r"[\w']+", normalize_name(text)))
