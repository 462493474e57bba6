"""
Track classification rules.

A track is the bucket a proposal contributes to in per-track statistics
("Core", "App", "Meta", ...). The main protocol and every other protocol use
different rules for choosing between a proposal's type and its category, so
each protocol maps to a named rule, and the category collapsing sets are data.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

from config.settings import UNKNOWN

STANDARDS_TRACK = "Standards Track"
APP_TRACK = "App"
CORE_TRACK = "Core"


@dataclass(frozen=True)
class TrackRule:
    """How one protocol picks and normalizes a proposal's track."""

    name: str
    # Standards Track proposals use their category; others use their type
    standards_uses_category: bool = True
    # Track for a Standards Track proposal with no category
    standards_default: Optional[str] = None
    # Fall back to the category when a non-standards proposal has no type
    category_fallback: bool = False
    app_categories: FrozenSet[str] = field(default_factory=frozenset)
    core_categories: FrozenSet[str] = field(default_factory=frozenset)


MAIN_PROTOCOL_RULE = TrackRule(
    name="main",
    standards_default=None,
    category_fallback=False,
    app_categories=frozenset({"ERC"}),
)

DEFAULT_RULE = TrackRule(
    name="default",
    standards_default=CORE_TRACK,
    category_fallback=True,
    app_categories=frozenset(
        {"ERC", "SRC", "Contracts", "Contract", "Application", "Applications", "RRC", "ARC"}
    ),
    core_categories=frozenset({"RIP", "AIP", "SNIP"}),
)

TRACK_RULES: Dict[str, TrackRule] = {
    "ethereum": MAIN_PROTOCOL_RULE,
}


def rule_for(protocol: str) -> TrackRule:
    """Track rule for a protocol (every protocol but the main one shares the default)."""
    return TRACK_RULES.get(protocol, DEFAULT_RULE)


def classify_track(protocol: str, proposal_type: Optional[str], category: Optional[str]) -> str:
    """
    Classify a proposal into a statistics track.

    Args:
        protocol: Protocol identifier
        proposal_type: Document type (e.g. "Standards Track", "Meta")
        category: Document category (e.g. "Core", "ERC")

    Returns:
        Normalized track name
    """
    rule = rule_for(protocol)

    if proposal_type == STANDARDS_TRACK and rule.standards_uses_category:
        track = category or rule.standards_default or proposal_type
    elif rule.category_fallback:
        track = proposal_type or category
    else:
        track = proposal_type

    track = track or UNKNOWN
    if track in rule.app_categories:
        return APP_TRACK
    if track in rule.core_categories:
        return CORE_TRACK
    return track
