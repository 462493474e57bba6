"""
Author field normalization.

Turns free-text author fields such as
``"Vitalik Buterin <vitalik@example.org> (@vbuterin), Gavin Wood <gavin@example.org>"``
into structured identities.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

# Split on newlines and on commas that are not inside parentheses
_SEPARATOR_RE = re.compile(r",(?![^()]*\))|\n")
_EMAIL_RE = re.compile(r"<([^>]+)>")
_HANDLE_RE = re.compile(r"\(([^)]+)\)")


@dataclass(frozen=True)
class AuthorIdentity:
    """One parsed author entry."""

    name: str
    email: Optional[str] = None
    handle: Optional[str] = None


def _parse_entry(entry: str) -> Optional[AuthorIdentity]:
    entry = entry.strip()
    if not entry:
        return None

    email_match = _EMAIL_RE.search(entry)
    handle_match = _HANDLE_RE.search(entry)

    name = _EMAIL_RE.sub("", entry, count=1)
    name = _HANDLE_RE.sub("", name, count=1).strip()
    if not name:
        return None

    email = email_match.group(1).strip() if email_match else None
    handle = handle_match.group(1).strip().removeprefix("@") if handle_match else None
    return AuthorIdentity(name=name, email=email or None, handle=handle or None)


def parse_authors(author_field: Union[str, Sequence[str], None]) -> List[AuthorIdentity]:
    """
    Parse an author field into structured identities.

    Args:
        author_field: Raw author string, or an already-split list of entries

    Returns:
        Parsed authors in input order; entries without a name are dropped
    """
    if not author_field:
        return []

    if isinstance(author_field, str):
        entries = _SEPARATOR_RE.split(author_field)
    else:
        entries = [str(item) for item in author_field if item is not None]

    authors = []
    for entry in entries:
        author = _parse_entry(entry)
        if author is not None:
            authors.append(author)
    return authors
