"""
Point-in-time statistics snapshots per protocol and globally.
"""

import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError

from config.settings import (
    DELETED_STATUS,
    FINALIZED_STATUSES,
    INELIGIBLE_STATUSES,
    MOVED_STATUS,
    UNKNOWN,
)
from iptracker.database import (
    Database,
    GlobalStatsSnapshot,
    Proposal,
    ProposalVersion,
    ProtocolStatsSnapshot,
    TrackStatsSnapshot,
)
from iptracker.tracks import classify_track
from iptracker.utils import iter_months, month_end, safe_division, utcnow, word_count

logger = logging.getLogger(__name__)

EXCLUDED_STATUSES = (DELETED_STATUS, MOVED_STATUS)


@dataclass
class TrackStats:
    track_name: str
    total_proposals: int = 0
    finalized_proposals: int = 0
    distinct_authors: int = 0
    authors_on_finalized: int = 0
    acceptance_score: float = 0.0
    status_counts: Dict[str, int] = field(default_factory=dict)


@dataclass
class ProtocolStats:
    """Statistics for one protocol as of one instant (not yet persisted)."""

    protocol: str
    as_of: datetime
    total_proposals: int = 0
    distinct_authors: int = 0
    authors_on_finalized: int = 0
    acceptance_score: float = 0.0
    total_word_count: int = 0
    average_word_count: float = 0.0
    status_counts: Dict[str, int] = field(default_factory=dict)
    type_counts: Dict[str, int] = field(default_factory=dict)
    year_counts: Dict[str, int] = field(default_factory=dict)
    tracks: List[TrackStats] = field(default_factory=list)


@dataclass
class SnapshotSummary:
    """Counts from a snapshot run; each (protocol, month) is one unit."""

    computed: int = 0
    skipped: int = 0
    failed: int = 0


class SnapshotEngine:
    """Computes and stores protocol and global statistics snapshots."""

    def __init__(self, database: Database):
        """
        Initialize snapshot engine.

        Args:
            database: Database instance
        """
        self.database = database

    # Computation
    def _unified_histories(self, session, protocol: str, as_of: datetime) -> Dict[int, List[ProposalVersion]]:
        """
        Version history up to as_of of every destination proposal of a protocol.

        Versions of proposals that moved into a destination (following
        moved_to_id transitively) are part of the destination's history; the
        move notices themselves are not.
        """
        destinations = (
            session.query(Proposal)
            .filter(Proposal.protocol == protocol, Proposal.moved_to_id.is_(None))
            .all()
        )
        sources_by_target: Dict[int, List[int]] = defaultdict(list)
        for proposal_id, moved_to_id in session.query(Proposal.id, Proposal.moved_to_id).filter(
            Proposal.moved_to_id.isnot(None)
        ):
            sources_by_target[moved_to_id].append(proposal_id)

        histories: Dict[int, List[ProposalVersion]] = {}
        for destination in destinations:
            member_ids = []
            pending = [destination.id]
            seen: Set[int] = set()
            while pending:
                current = pending.pop()
                if current in seen:
                    continue
                seen.add(current)
                member_ids.append(current)
                pending.extend(sources_by_target.get(current, []))

            versions = (
                session.query(ProposalVersion)
                .filter(
                    ProposalVersion.proposal_id.in_(member_ids),
                    ProposalVersion.commit_date <= as_of,
                )
                .order_by(ProposalVersion.commit_date, ProposalVersion.id)
                .all()
            )
            versions = [
                v for v in versions if v.proposal_id == destination.id or v.status != MOVED_STATUS
            ]
            if versions:
                histories[destination.id] = versions
        return histories

    def compute(self, protocol: str, as_of: datetime) -> ProtocolStats:
        """
        Compute statistics for a protocol from persisted state up to as_of.

        Each proposal contributes its most recent version at or before as_of;
        proposals whose version at that point is Deleted or Moved are left out.
        Authors count from every version of a proposal's history.

        Args:
            protocol: Protocol identifier
            as_of: Cutoff instant (naive UTC)

        Returns:
            ProtocolStats (nothing is written)
        """
        stats = ProtocolStats(protocol=protocol, as_of=as_of)

        with self.database.get_session() as session:
            histories = self._unified_histories(session, protocol, as_of)

            eligible_authors: Set[int] = set()
            finalized_authors: Set[int] = set()
            status_counts: Counter = Counter()
            type_counts: Counter = Counter()
            year_counts: Counter = Counter()
            track_totals: Counter = Counter()
            track_finalized: Counter = Counter()
            track_status: Dict[str, Counter] = defaultdict(Counter)
            track_authors: Dict[str, Set[int]] = defaultdict(set)
            track_finalized_authors: Dict[str, Set[int]] = defaultdict(set)

            for versions in histories.values():
                latest = versions[-1]
                if latest.status in EXCLUDED_STATUSES:
                    continue

                status = latest.status
                track = classify_track(protocol, latest.type, latest.category)
                is_finalized = status in FINALIZED_STATUSES
                authors = {author.id for version in versions for author in version.authors}

                if status not in INELIGIBLE_STATUSES:
                    eligible_authors.update(authors)
                if is_finalized:
                    finalized_authors.update(authors)
                    track_finalized[track] += 1
                    track_finalized_authors[track].update(authors)

                stats.total_proposals += 1
                stats.total_word_count += word_count(latest.raw_markdown or "")
                status_counts[status] += 1
                type_counts[latest.type or UNKNOWN] += 1
                if latest.created is not None:
                    year_counts[str(latest.created.year)] += 1

                track_totals[track] += 1
                track_status[track][status] += 1
                track_authors[track].update(authors)

        stats.distinct_authors = len(eligible_authors)
        stats.authors_on_finalized = len(finalized_authors)
        stats.acceptance_score = safe_division(stats.authors_on_finalized, stats.distinct_authors)
        stats.average_word_count = safe_division(stats.total_word_count, stats.total_proposals)
        stats.status_counts = dict(status_counts)
        stats.type_counts = dict(type_counts)
        stats.year_counts = dict(year_counts)

        for track in sorted(track_totals):
            stats.tracks.append(
                TrackStats(
                    track_name=track,
                    total_proposals=track_totals[track],
                    finalized_proposals=track_finalized[track],
                    distinct_authors=len(track_authors[track]),
                    authors_on_finalized=len(track_finalized_authors[track]),
                    acceptance_score=safe_division(track_finalized[track], track_totals[track]),
                    status_counts=dict(track_status[track]),
                )
            )
        return stats

    # Persistence
    def store_snapshot(
        self, stats: ProtocolStats, year: int, month: int, overwrite: bool = False
    ) -> Optional[ProtocolStatsSnapshot]:
        """
        Persist statistics as the (protocol, year, month) snapshot.

        An existing row is kept unless overwrite is set. Concurrent writers
        are arbitrated by the unique constraint: the losing insert is rolled
        back and the winner's row returned.

        Returns:
            The stored snapshot row
        """
        with self.database.get_session() as session:
            snapshot = (
                session.query(ProtocolStatsSnapshot)
                .filter_by(protocol=stats.protocol, year=year, month=month)
                .first()
            )
            if snapshot is not None and not overwrite:
                logger.debug(f"Snapshot {stats.protocol} {year}-{month:02d} exists, keeping it")
                return snapshot

            if snapshot is None:
                snapshot = ProtocolStatsSnapshot(protocol=stats.protocol, year=year, month=month)
                session.add(snapshot)
            else:
                # Old track rows must be gone before the replacements are inserted
                snapshot.tracks = []
                session.flush()

            snapshot.snapshot_date = stats.as_of
            snapshot.total_proposals = stats.total_proposals
            snapshot.distinct_authors_count = stats.distinct_authors
            snapshot.authors_on_finalized_count = stats.authors_on_finalized
            snapshot.acceptance_score = stats.acceptance_score
            snapshot.total_word_count = stats.total_word_count
            snapshot.average_word_count = stats.average_word_count
            snapshot.status_counts = stats.status_counts
            snapshot.type_counts = stats.type_counts
            snapshot.year_counts = stats.year_counts
            snapshot.computed_at = int(time.time())
            snapshot.tracks = [
                TrackStatsSnapshot(
                    track_name=track.track_name,
                    total_proposals_in_track=track.total_proposals,
                    finalized_proposals_in_track=track.finalized_proposals,
                    distinct_authors_in_track_count=track.distinct_authors,
                    authors_on_finalized_in_track_count=track.authors_on_finalized,
                    acceptance_score_for_track=track.acceptance_score,
                    status_counts_in_track=track.status_counts,
                )
                for track in stats.tracks
            ]

            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(
                    f"Snapshot {stats.protocol} {year}-{month:02d} was written concurrently, keeping it"
                )
                return (
                    session.query(ProtocolStatsSnapshot)
                    .filter_by(protocol=stats.protocol, year=year, month=month)
                    .first()
                )
            return snapshot

    def snapshot_month(
        self, protocol: str, year: int, month: int, now: Optional[datetime] = None
    ) -> Optional[ProtocolStatsSnapshot]:
        """
        Compute and store one protocol's snapshot for one month.

        Past months that already have a snapshot are skipped. The current
        month is still open and is recomputed (as of now) and overwritten.

        Returns:
            The newly stored snapshot, or None if skipped
        """
        now = now or utcnow()
        is_open = (year, month) == (now.year, now.month)

        if not is_open and self.database.get_protocol_snapshot(protocol, year, month) is not None:
            logger.debug(f"Skipping {protocol} {year}-{month:02d}: already snapshotted")
            return None

        as_of = now if is_open else month_end(year, month)
        stats = self.compute(protocol, as_of)
        if stats.total_proposals == 0 and self.database.get_protocol_snapshot(protocol, year, month) is None:
            logger.debug(f"Skipping {protocol} {year}-{month:02d}: no proposals yet")
            return None

        snapshot = self.store_snapshot(stats, year, month, overwrite=is_open)
        logger.info(
            f"Snapshot {protocol} {year}-{month:02d}: {stats.total_proposals} proposals, "
            f"acceptance {stats.acceptance_score:.2%}"
        )
        return snapshot

    def update_latest(self, protocols: List[str], now: Optional[datetime] = None) -> SnapshotSummary:
        """Recompute the current month's snapshot for each protocol and the global row."""
        now = now or utcnow()
        summary = SnapshotSummary()
        for protocol in protocols:
            try:
                if self.snapshot_month(protocol, now.year, now.month, now=now) is None:
                    summary.skipped += 1
                else:
                    summary.computed += 1
            except Exception as e:
                summary.failed += 1
                logger.error(f"Failed to snapshot {protocol} {now.year}-{now.month:02d}: {e}")

        self._aggregate_or_log(now.year, now.month, now)
        return summary

    def regenerate_historical(
        self, protocols: List[str], now: Optional[datetime] = None
    ) -> SnapshotSummary:
        """
        Backfill monthly snapshots from the first to the last known activity.

        Months already snapshotted are skipped, so the backfill can be rerun
        or resumed at any point.
        """
        now = now or utcnow()
        summary = SnapshotSummary()
        bounds = self.database.get_activity_bounds()
        if bounds is None:
            logger.warning("No proposal versions stored, nothing to backfill")
            return summary

        first, last = bounds
        for year, month, _cutoff in iter_months(first, min(last, now)):
            for protocol in protocols:
                try:
                    if self.snapshot_month(protocol, year, month, now=now) is None:
                        summary.skipped += 1
                    else:
                        summary.computed += 1
                except Exception as e:
                    summary.failed += 1
                    logger.error(f"Failed to snapshot {protocol} {year}-{month:02d}: {e}")
            self._aggregate_or_log(year, month, now)

        logger.info(
            f"Historical snapshots: {summary.computed} computed, {summary.skipped} skipped, "
            f"{summary.failed} failed"
        )
        return summary

    # Global aggregation
    def aggregate_global(
        self, year: int, month: int, now: Optional[datetime] = None
    ) -> Optional[GlobalStatsSnapshot]:
        """
        Sum every protocol snapshot of a month into the global row.

        Acceptance is finalized authors over distinct authors (0 when there are
        none) and centralization is its complement. Past months with a global
        row are kept as they are.

        Returns:
            The stored global snapshot, or None if skipped
        """
        now = now or utcnow()
        is_open = (year, month) == (now.year, now.month)

        snapshots = self.database.get_protocol_snapshots_for_month(year, month)
        if not snapshots:
            return None

        with self.database.get_session() as session:
            row = session.query(GlobalStatsSnapshot).filter_by(year=year, month=month).first()
            if row is not None and not is_open:
                return None
            if row is None:
                row = GlobalStatsSnapshot(year=year, month=month)
                session.add(row)

            total = sum(s.total_proposals or 0 for s in snapshots)
            distinct = sum(s.distinct_authors_count or 0 for s in snapshots)
            finalized = sum(s.authors_on_finalized_count or 0 for s in snapshots)
            acceptance = safe_division(finalized, distinct)

            row.snapshot_date = max(s.snapshot_date for s in snapshots)
            row.total_proposals = total
            row.distinct_authors_count = distinct
            row.authors_on_finalized_count = finalized
            row.acceptance_rate = acceptance
            row.centralization_rate = 1 - acceptance
            row.computed_at = int(time.time())

            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(f"Global snapshot {year}-{month:02d} was written concurrently")
                return None

        logger.info(
            f"Global snapshot {year}-{month:02d}: {total} proposals, "
            f"acceptance {acceptance:.2%}, centralization {1 - acceptance:.2%}"
        )
        return row

    def backfill_global(self, now: Optional[datetime] = None) -> SnapshotSummary:
        """Derive global rows for every month that has protocol snapshots."""
        summary = SnapshotSummary()
        bounds = self.database.get_snapshot_month_bounds()
        if bounds is None:
            logger.warning("No protocol snapshots stored, nothing to aggregate")
            return summary

        first, last = bounds
        for year, month, _cutoff in iter_months(first, last):
            try:
                if self.aggregate_global(year, month, now=now) is None:
                    summary.skipped += 1
                else:
                    summary.computed += 1
            except Exception as e:
                summary.failed += 1
                logger.error(f"Failed to aggregate global snapshot {year}-{month:02d}: {e}")
        return summary

    def _aggregate_or_log(self, year: int, month: int, now: datetime) -> None:
        try:
            self.aggregate_global(year, month, now=now)
        except Exception as e:
            logger.error(f"Failed to aggregate global snapshot {year}-{month:02d}: {e}")
