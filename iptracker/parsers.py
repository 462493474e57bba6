"""
Protocol-aware proposal metadata parsers.

Every protocol's documents are read by one or more parser strategies tried in
order. A strategy is a loader that turns the raw document into a key/value
header plus one extractor per field. Extraction order is fixed (title, status,
type, category, created, discussion link, authors, requires) and each
extractor falls back to "Unknown" or None instead of failing the parse.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from config.settings import UNKNOWN
from iptracker.authors import AuthorIdentity, parse_authors
from iptracker.tracks import STANDARDS_TRACK

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A(?:\ufeff)?---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_HEADER_LINE_RE = re.compile(r"^([A-Za-z][\w -]*?):\s*(.*)$")
_RAW_STATUS_RE = re.compile(r"^[Ss]tatus:\s*(.*)", re.MULTILINE)
_TABLE_SEPARATOR_RE = re.compile(r"^\|\s*:?-{3,}")
_H1_RE = re.compile(r"^#\s*(.*)", re.MULTILINE)
_PIP_PREFIX_RE = re.compile(r"PIP-\d+:\s*")
_LINK_TARGET_RE = re.compile(r"\(([^)]+)\)")

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d-%m-%Y", "%d/%m/%Y", "%B %d, %Y", "%b %d, %Y")

RAW_KEY = "__raw_markdown"


@dataclass
class ParsedProposal:
    """Structured header of one proposal document."""

    title: str
    status: str
    type: str
    category: Optional[str] = None
    created: Optional[datetime] = None
    discussions_to: Optional[str] = None
    authors: List[AuthorIdentity] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)


def _first_value(data: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse a created/date header value.

    Args:
        value: YAML date/datetime, or a date string in a common format

    Returns:
        Naive datetime, or None when the value is not a recognizable date
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def split_frontmatter(raw_markdown: str) -> Tuple[Optional[str], str]:
    """
    Split a document into its YAML frontmatter block and body.

    Returns:
        (frontmatter text or None, body)
    """
    match = _FRONTMATTER_RE.match(raw_markdown)
    if not match:
        return None, raw_markdown
    return match.group(1), raw_markdown[match.end():]


def document_body(raw_markdown: str) -> str:
    """Document content without its frontmatter block."""
    return split_frontmatter(raw_markdown)[1]


# --- Loaders ---


def load_frontmatter(raw_markdown: str) -> Optional[Dict[str, Any]]:
    """
    Load a YAML frontmatter header with case-insensitive keys.

    Very old documents carry a bare "Key: value" preamble instead of a fenced
    block; that preamble is accepted when it declares a status.
    """
    header, _ = split_frontmatter(raw_markdown)
    if header is not None:
        try:
            loaded = yaml.safe_load(header)
        except yaml.YAMLError as e:
            logger.debug(f"Malformed frontmatter: {e}")
            return None
        if not isinstance(loaded, dict):
            return None
    else:
        loaded = _load_legacy_preamble(raw_markdown)
        if loaded is None:
            return None

    data: Dict[str, Any] = {RAW_KEY: raw_markdown}
    for key, value in loaded.items():
        data[str(key).strip().lower()] = value
    return data


def _load_legacy_preamble(raw_markdown: str) -> Optional[Dict[str, Any]]:
    data: Dict[str, Any] = {}
    for line in raw_markdown.splitlines()[:40]:
        stripped = line.strip().strip("`")
        if not stripped:
            if data:
                break
            continue
        match = _HEADER_LINE_RE.match(stripped)
        if match:
            data[match.group(1).strip()] = match.group(2).strip()
        elif data:
            break
    if not any(key.lower() == "status" for key in data):
        return None
    return data


def _table_cells(line: str) -> List[str]:
    return [cell.strip() for cell in line.strip().strip("|").split("|")]


def load_markdown_table(raw_markdown: str) -> Optional[Dict[str, Any]]:
    """
    Load the metadata table that Polygon documents embed in their body.

    The first header/separator/value row triple is used; the title comes from
    the first H1 when the table has none.
    """
    lines = raw_markdown.split("\n")
    for i in range(len(lines) - 2):
        if (
            lines[i].strip().startswith("|")
            and _TABLE_SEPARATOR_RE.match(lines[i + 1].strip())
            and lines[i + 2].strip().startswith("|")
        ):
            header_line, value_line = lines[i], lines[i + 2]
            break
    else:
        return None

    headers = [h.lower() for h in _table_cells(header_line)]
    values = _table_cells(value_line)
    if len(headers) != len(values):
        logger.warning(
            f"Metadata table header/value mismatch: {len(headers)} headers, {len(values)} values"
        )
        return None

    data: Dict[str, Any] = {RAW_KEY: raw_markdown}
    for header, value in zip(headers, values):
        if header:
            data[header] = value

    if not data.get("title"):
        title_match = _H1_RE.search(raw_markdown)
        if title_match:
            data["title"] = _PIP_PREFIX_RE.sub("", title_match.group(1), count=1).strip()
    return data


# --- Field extractors ---


def extract_title(data: Dict[str, Any], fallback_title: str) -> str:
    return _as_text(data.get("title")) or fallback_title


def extract_frontmatter_status(data: Dict[str, Any]) -> str:
    status = _as_text(_first_value(data, ("status", "doc-status", "proposal-status")))
    if status:
        return status
    match = _RAW_STATUS_RE.search(data.get(RAW_KEY, ""))
    if match and match.group(1).strip():
        return match.group(1).strip()
    return UNKNOWN


def extract_frontmatter_type(data: Dict[str, Any]) -> str:
    return _as_text(_first_value(data, ("type", "proposal-type", "eip-type"))) or UNKNOWN


def extract_frontmatter_category(data: Dict[str, Any]) -> Optional[str]:
    return _as_text(data.get("category"))


def extract_frontmatter_created(data: Dict[str, Any]) -> Optional[datetime]:
    return parse_date(data.get("created"))


def extract_frontmatter_discussion(data: Dict[str, Any]) -> Optional[str]:
    return _as_text(_first_value(data, ("discussions-to", "discussion-to", "discussion", "forum")))


def extract_authors(data: Dict[str, Any]) -> List[AuthorIdentity]:
    return parse_authors(data.get("author") or "")


def extract_frontmatter_requires(data: Dict[str, Any]) -> List[str]:
    requires = data.get("requires")
    if isinstance(requires, (list, tuple)):
        return [str(item).strip() for item in requires if str(item).strip()]
    if isinstance(requires, int):
        return [str(requires)]
    if isinstance(requires, str):
        return [item.strip() for item in requires.split(",") if item.strip()]
    return []


def extract_table_status(data: Dict[str, Any]) -> str:
    return _as_text(_first_value(data, ("status", "pip status"))) or UNKNOWN


def extract_table_type(data: Dict[str, Any]) -> str:
    # The table's "type" (Core, Contracts, ...) is a category; its presence makes it Standards Track
    return STANDARDS_TRACK if data.get("type") else UNKNOWN


def extract_table_category(data: Dict[str, Any]) -> Optional[str]:
    return _as_text(data.get("type"))


def extract_table_created(data: Dict[str, Any]) -> Optional[datetime]:
    return parse_date(data.get("date"))


def extract_table_discussion(data: Dict[str, Any]) -> Optional[str]:
    discussion = _as_text(data.get("discussion"))
    if not discussion:
        return None
    match = _LINK_TARGET_RE.search(discussion)
    return match.group(1) if match else discussion


def extract_no_requires(data: Dict[str, Any]) -> List[str]:
    return []


# --- Strategies ---


@dataclass(frozen=True)
class ParserStrategy:
    """One document-schema convention: a header loader plus field extractors."""

    name: str
    load: Callable[[str], Optional[Dict[str, Any]]]
    status: Callable[[Dict[str, Any]], str]
    type: Callable[[Dict[str, Any]], str]
    category: Callable[[Dict[str, Any]], Optional[str]]
    created: Callable[[Dict[str, Any]], Optional[datetime]]
    discussions_to: Callable[[Dict[str, Any]], Optional[str]]
    requires: Callable[[Dict[str, Any]], List[str]]
    title: Callable[[Dict[str, Any], str], str] = extract_title
    authors: Callable[[Dict[str, Any]], List[AuthorIdentity]] = extract_authors

    def parse(self, raw_markdown: str, fallback_title: str) -> Optional[ParsedProposal]:
        """
        Parse a raw document.

        Args:
            raw_markdown: Full document text
            fallback_title: Title used when the header has none

        Returns:
            ParsedProposal, or None when the document has no recognizable header
        """
        data = self.load(raw_markdown)
        if not data:
            return None
        return ParsedProposal(
            title=self.title(data, fallback_title),
            status=self.status(data),
            type=self.type(data),
            category=self.category(data),
            created=self.created(data),
            discussions_to=self.discussions_to(data),
            authors=self.authors(data),
            requires=self.requires(data),
        )


FRONTMATTER = ParserStrategy(
    name="frontmatter",
    load=load_frontmatter,
    status=extract_frontmatter_status,
    type=extract_frontmatter_type,
    category=extract_frontmatter_category,
    created=extract_frontmatter_created,
    discussions_to=extract_frontmatter_discussion,
    requires=extract_frontmatter_requires,
)

MARKDOWN_TABLE = ParserStrategy(
    name="markdown_table",
    load=load_markdown_table,
    status=extract_table_status,
    type=extract_table_type,
    category=extract_table_category,
    created=extract_table_created,
    discussions_to=extract_table_discussion,
    requires=extract_no_requires,
)

DEFAULT_STRATEGIES: Tuple[ParserStrategy, ...] = (FRONTMATTER,)

# Polygon has used both a metadata table and YAML frontmatter over time
PROTOCOL_STRATEGIES: Dict[str, Tuple[ParserStrategy, ...]] = {
    "polygon": (MARKDOWN_TABLE, FRONTMATTER),
}


def strategies_for(protocol: str) -> Tuple[ParserStrategy, ...]:
    """Parser strategies for a protocol, in the order they are tried."""
    return PROTOCOL_STRATEGIES.get(protocol, DEFAULT_STRATEGIES)


def parse_proposal(protocol: str, raw_markdown: str, fallback_title: str) -> Optional[ParsedProposal]:
    """
    Parse a proposal document with the strategies registered for its protocol.

    Args:
        protocol: Protocol identifier (e.g. "ethereum", "polygon")
        raw_markdown: Full document text
        fallback_title: Title used when the header has none

    Returns:
        Result of the first strategy that recognizes a header, or None
    """
    for strategy in strategies_for(protocol):
        parsed = strategy.parse(raw_markdown, fallback_title)
        if parsed is not None:
            return parsed
    return None
