"""
History merger for forked repositories.

When a repository is forked to continue a subset of proposals (ethereum/EIPs
-> ethereum/ERCs), each migrated proposal ends up with two records: the
origin's (redundant) and the fork's (canonical). Merging re-links every
version of the redundant record to the canonical one and deletes the
redundant record, one pair per transaction.

A redundant record whose every commit already sits on the canonical record
(the origin re-crawled after a checkpoint reset) was merged before; it is
discarded and the pair reported as skipped.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from config import REPOSITORIES, RepositoryConfig
from iptracker.database import Database, Proposal
from iptracker.exceptions import MergeIntegrityError
from iptracker.resolver import discard_proposal, relink_versions, shared_commits
from iptracker.versions import recorded_commits

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Outcome of merging one canonical/redundant pair."""

    proposal_number: str
    canonical_id: Optional[int] = None
    redundant_id: Optional[int] = None
    versions_relinked: int = 0
    skipped: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class MergeSummary:
    """Outcome of merging every pair of one or more protocol pairs."""

    results: List[MergeResult] = field(default_factory=list)

    @property
    def merged(self) -> int:
        return sum(1 for r in self.results if r.succeeded and not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)


def fork_pairs(repositories: List[RepositoryConfig]) -> List[tuple]:
    """(canonical protocol, redundant protocol) for every forked repository."""
    return [(repo.protocol, repo.forked_from) for repo in repositories if repo.forked_from]


class HistoryMerger:
    """Merges proposal histories split across a fork migration."""

    def __init__(self, database: Database, repositories: Optional[List[RepositoryConfig]] = None):
        """
        Initialize merger.

        Args:
            database: Database instance
            repositories: Tracked repositories; pairs come from their forked_from
        """
        self.database = database
        self.repositories = repositories if repositories is not None else REPOSITORIES

    def merge_forked_histories(self) -> MergeSummary:
        """Merge every declared fork pair. Already-merged pairs are no-ops."""
        summary = MergeSummary()
        for canonical_protocol, redundant_protocol in fork_pairs(self.repositories):
            pair_summary = self.merge_protocols(canonical_protocol, redundant_protocol)
            summary.results.extend(pair_summary.results)

        logger.info(
            f"Merge complete: {summary.merged} merged, {summary.skipped} skipped, "
            f"{summary.failed} failed"
        )
        return summary

    def merge_protocols(self, canonical_protocol: str, redundant_protocol: str) -> MergeSummary:
        """
        Merge every proposal number present in both protocols.

        Args:
            canonical_protocol: Protocol of the fork (surviving records)
            redundant_protocol: Protocol of the origin (absorbed records)

        Returns:
            MergeSummary with one result per matched number
        """
        summary = MergeSummary()
        canonical = {p.proposal_number: p for p in self.database.get_proposals(canonical_protocol)}
        redundant = {p.proposal_number: p for p in self.database.get_proposals(redundant_protocol)}
        matched = sorted(set(canonical) & set(redundant), key=lambda n: (len(n), n))

        logger.info(
            f"Found {len(canonical)} {canonical_protocol} and {len(redundant)} "
            f"{redundant_protocol} proposals, {len(matched)} to merge"
        )

        for number in matched:
            summary.results.append(
                self.merge_pair(canonical[number].id, redundant[number].id, proposal_number=number)
            )
        return summary

    def merge_pair(
        self, canonical_id: int, redundant_id: int, proposal_number: Optional[str] = None
    ) -> MergeResult:
        """
        Merge one pair: begin, re-link versions, delete redundant, commit.

        Any failure rolls the whole pair back and is reported in the result
        instead of raised, so other pairs are unaffected.

        Args:
            canonical_id: Surviving proposal id
            redundant_id: Proposal whose versions are absorbed

        Returns:
            MergeResult distinguishing success, skip and failure
        """
        result = MergeResult(
            proposal_number=proposal_number or "",
            canonical_id=canonical_id,
            redundant_id=redundant_id,
        )
        session = self.database.get_session()
        try:
            canonical = session.get(Proposal, canonical_id)
            redundant = session.get(Proposal, redundant_id)
            if redundant is None:
                result.skipped = True
                logger.debug(f"Proposal {redundant_id} already merged, skipping")
                return result
            if canonical is None:
                raise MergeIntegrityError(f"Canonical proposal {canonical_id} does not exist")
            if canonical.id == redundant.id:
                raise MergeIntegrityError(f"Cannot merge proposal {canonical_id} into itself")
            if canonical.proposal_number != redundant.proposal_number:
                raise MergeIntegrityError(
                    f"Number mismatch: {canonical.protocol}-{canonical.proposal_number} vs "
                    f"{redundant.protocol}-{redundant.proposal_number}"
                )
            result.proposal_number = canonical.proposal_number

            overlap = shared_commits(session, canonical.id, redundant.id)
            if overlap and recorded_commits(session, redundant.id) <= set(overlap):
                label = f"{redundant.protocol}-{redundant.proposal_number}"
                discarded = discard_proposal(session, redundant, canonical)
                session.commit()
                result.skipped = True
                logger.info(f"{label} already merged, discarded {discarded} re-crawled versions")
                return result
            if overlap:
                raise MergeIntegrityError(
                    f"{len(overlap)} commits recorded on both records (first {overlap[0][:8]})"
                )

            result.versions_relinked = relink_versions(session, redundant, canonical)
            session.commit()
            logger.info(
                f"Merged {redundant.protocol}-{redundant.proposal_number} into "
                f"{canonical.protocol}-{canonical.proposal_number}: "
                f"{result.versions_relinked} versions re-linked"
            )
        except Exception as e:
            session.rollback()
            result.error = str(e)
            logger.error(
                f"Failed to merge {redundant_id} into {canonical_id}, transaction rolled back: {e}"
            )
        finally:
            session.close()
        return result
