"""Tests for protocol-aware metadata parsing."""

from datetime import datetime

from iptracker.authors import AuthorIdentity
from iptracker.parsers import (
    FRONTMATTER,
    MARKDOWN_TABLE,
    document_body,
    parse_date,
    parse_proposal,
    strategies_for,
)
from iptracker.tracks import classify_track

EIP_1559 = """---
eip: 1559
title: Fee market change for ETH 1.0 chain
author: Vitalik Buterin (@vbuterin), Eric Conner (@econoar)
discussions-to: https://ethereum-magicians.org/t/eip-1559-fee-market-change-for-eth-1-0-chain/2783
status: Final
type: Standards Track
category: Core
created: 2019-04-13
requires: 2718, 2930
---

## Simple Summary
A transaction pricing mechanism.
"""

POLYGON_TABLE = """# PIP-12: Improve Fee Handling

| PIP | Title | Description | Author | Discussion | Status | Type | Date |
|-----|-------|-------------|--------|------------|--------|------|------|
| 12 | Improve Fee Handling | Better fees | Alice (@alice) | [Forum](https://forum.polygon.technology/t/pip-12/1) | Draft | Core | 2023-07-01 |

## Abstract
Fees.
"""


class TestFrontmatterParser:
    def test_full_header(self):
        parsed = parse_proposal("ethereum", EIP_1559, "EIP-1559")

        assert parsed.title == "Fee market change for ETH 1.0 chain"
        assert parsed.status == "Final"
        assert parsed.type == "Standards Track"
        assert parsed.category == "Core"
        assert parsed.created == datetime(2019, 4, 13)
        assert parsed.discussions_to.startswith("https://ethereum-magicians.org/")
        assert parsed.requires == ["2718", "2930"]
        assert parsed.authors == [
            AuthorIdentity(name="Vitalik Buterin", handle="vbuterin"),
            AuthorIdentity(name="Eric Conner", handle="econoar"),
        ]
        assert classify_track("ethereum", parsed.type, parsed.category) == "Core"

    def test_keys_are_case_insensitive_with_aliases(self):
        raw = "---\nTitle: Alias test\nDoc-Status: Review\nProposal-Type: Meta\nDiscussion: https://forum.example/t/1\nrequires: [1, 2]\n---\nbody\n"

        parsed = parse_proposal("starknet", raw, "SNIP-1")

        assert parsed.title == "Alias test"
        assert parsed.status == "Review"
        assert parsed.type == "Meta"
        assert parsed.discussions_to == "https://forum.example/t/1"
        assert parsed.requires == ["1", "2"]

    def test_missing_fields_default_to_unknown(self):
        parsed = parse_proposal("ethereum", "---\neip: 7\n---\nbody\n", "EIP-7")

        assert parsed.title == "EIP-7"
        assert parsed.status == "Unknown"
        assert parsed.type == "Unknown"
        assert parsed.category is None
        assert parsed.created is None
        assert parsed.authors == []
        assert parsed.requires == []

    def test_single_numeric_requires(self):
        parsed = parse_proposal("ethereum", "---\nstatus: Draft\nrequires: 155\n---\n", "EIP-1")

        assert parsed.requires == ["155"]

    def test_legacy_preamble(self):
        raw = "```\nEIP: 2\nTitle: Homestead Hard-fork Changes\nStatus: Final\nType: Standards Track\n```\n\n### Specification\n"

        parsed = parse_proposal("ethereum", raw, "EIP-2")

        assert parsed.title == "Homestead Hard-fork Changes"
        assert parsed.status == "Final"

    def test_no_header_returns_none(self):
        assert parse_proposal("ethereum", "# Just a heading\n\nSome prose.\n", "EIP-9") is None

    def test_malformed_yaml_returns_none(self):
        assert parse_proposal("ethereum", "---\ntitle: [unclosed\n---\nbody\n", "EIP-9") is None

    def test_document_body_strips_frontmatter(self):
        body = document_body(EIP_1559)

        assert not body.lstrip().startswith("---")
        assert "A transaction pricing mechanism." in body


class TestPolygonParser:
    def test_strategy_order(self):
        assert strategies_for("polygon") == (MARKDOWN_TABLE, FRONTMATTER)
        assert strategies_for("ethereum") == (FRONTMATTER,)

    def test_metadata_table(self):
        parsed = parse_proposal("polygon", POLYGON_TABLE, "PIP-12")

        assert parsed.title == "Improve Fee Handling"
        assert parsed.status == "Draft"
        assert parsed.type == "Standards Track"
        assert parsed.category == "Core"
        assert parsed.created == datetime(2023, 7, 1)
        assert parsed.discussions_to == "https://forum.polygon.technology/t/pip-12/1"
        assert parsed.authors == [AuthorIdentity(name="Alice", handle="alice")]
        assert parsed.requires == []
        assert classify_track("polygon", parsed.type, parsed.category) == "Core"

    def test_title_from_heading_when_table_has_none(self):
        raw = "# PIP-30: Contracts Upgrade\n\n| Author | Status | Type |\n|---|---|---|\n| Bob | Final | Contracts |\n"

        parsed = parse_proposal("polygon", raw, "PIP-30")

        assert parsed.title == "Contracts Upgrade"
        assert parsed.status == "Final"
        assert classify_track("polygon", parsed.type, parsed.category) == "App"

    def test_frontmatter_fallback(self):
        raw = "---\ntitle: Newer format\nstatus: Review\ntype: Standards Track\ncategory: Core\n---\nbody\n"

        parsed = parse_proposal("polygon", raw, "PIP-40")

        assert parsed.title == "Newer format"
        assert parsed.status == "Review"


class TestParseDate:
    def test_formats(self):
        assert parse_date("2023-06-01") == datetime(2023, 6, 1)
        assert parse_date("2023/06/01") == datetime(2023, 6, 1)
        assert parse_date("June 1, 2023") == datetime(2023, 6, 1)

    def test_unrecognized(self):
        assert parse_date("sometime soon") is None
        assert parse_date(None) is None
        assert parse_date("") is None
