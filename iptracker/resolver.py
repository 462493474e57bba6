"""
Moved/renamed proposal resolver.

Keeps exactly one proposal row per (protocol, number) when documents are
renamed, and links proposals that carry a move notice to the proposal that
now holds their document.
"""

import logging
import posixpath
import time
from dataclasses import dataclass
from typing import List, Optional

from config import REPOSITORIES, RepositoryConfig
from iptracker.database import Database, Proposal, ProposalVersion
from iptracker.utils import extract_proposal_number
from iptracker.versions import recorded_commits

logger = logging.getLogger(__name__)


@dataclass
class ResolveSummary:
    """Counts from one moved-proposal resolution pass."""

    linked: int = 0
    unresolved: int = 0


def relink_versions(session, source: Proposal, target: Proposal) -> int:
    """
    Move every version of ``source`` onto ``target`` and delete ``source``.

    Runs inside the caller's transaction. Proposals pointing at the source as
    their move destination are repointed at the target.

    Returns:
        Number of versions re-linked
    """
    count = (
        session.query(ProposalVersion)
        .filter(ProposalVersion.proposal_id == source.id)
        .update({ProposalVersion.proposal_id: target.id}, synchronize_session=False)
    )
    session.query(Proposal).filter(Proposal.moved_to_id == source.id).update(
        {Proposal.moved_to_id: target.id}, synchronize_session=False
    )
    session.query(Proposal).filter(Proposal.id == source.id).delete(synchronize_session=False)
    return count


def discard_proposal(session, source: Proposal, target: Proposal) -> int:
    """
    Delete ``source`` and its versions, whose commits ``target`` already holds.

    Runs inside the caller's transaction. Proposals pointing at the source as
    their move destination are repointed at the target.

    Returns:
        Number of versions deleted
    """
    session.query(Proposal).filter(Proposal.moved_to_id == source.id).update(
        {Proposal.moved_to_id: target.id}, synchronize_session=False
    )
    versions = session.query(ProposalVersion).filter_by(proposal_id=source.id).all()
    for version in versions:
        session.delete(version)
    session.flush()
    session.delete(source)
    return len(versions)


def shared_commits(session, first_id: int, second_id: int) -> List[str]:
    """Commit SHAs recorded in the version histories of both proposals."""
    return sorted(recorded_commits(session, first_id) & recorded_commits(session, second_id))


class MovedProposalResolver:
    """Re-associates proposal continuity across renames and moves."""

    def __init__(self, database: Database, repositories: Optional[List[RepositoryConfig]] = None):
        """
        Initialize resolver.

        Args:
            database: Database instance
            repositories: Tracked repositories used to map move destinations
        """
        self.database = database
        self.repositories = repositories if repositories is not None else REPOSITORIES

    def rename(
        self,
        config: RepositoryConfig,
        old_number: str,
        new_number: str,
        new_path: str,
    ) -> Optional[int]:
        """
        Re-key a proposal after its document was renamed.

        If no proposal holds the new number the existing row is renumbered in
        place; otherwise its versions are folded into the row that does.

        Returns:
            Id of the proposal that now holds the history, or None if the old
            number was never recorded
        """
        with self.database.get_session() as session:
            source = (
                session.query(Proposal)
                .filter_by(protocol=config.protocol, proposal_number=old_number)
                .first()
            )
            if source is None:
                logger.info(
                    f"Rename of unknown {config.protocol}-{old_number}, treating {new_path} as new"
                )
                return None

            if old_number == new_number:
                source.github_path = new_path
                session.commit()
                return source.id

            target = (
                session.query(Proposal)
                .filter_by(protocol=config.protocol, proposal_number=new_number)
                .first()
            )
            if target is None:
                logger.info(
                    f"Renumbering {config.protocol}-{old_number} to {new_number} ({new_path})"
                )
                source.proposal_number = new_number
                source.github_path = new_path
                source.updated_at = int(time.time())
                session.commit()
                return source.id

            overlap = shared_commits(session, source.id, target.id)
            if overlap:
                # Same commit recorded under both numbers: keep the target's copy
                for version in session.query(ProposalVersion).filter_by(proposal_id=source.id).all():
                    if set(version.recorded_commits) & set(overlap):
                        session.delete(version)
                session.flush()

            count = relink_versions(session, source, target)
            target.github_path = new_path
            target.updated_at = int(time.time())
            session.commit()
            logger.info(
                f"Folded {count} versions of {config.protocol}-{old_number} into {new_number}"
            )
            return target.id

    def repository_for_path(self, path: str) -> Optional[RepositoryConfig]:
        """
        Map a move destination to the tracked repository that owns it.

        Accepts relative paths ("../ERCS/erc-20.md") and GitHub URLs
        ("https://github.com/ethereum/ERCs/blob/master/ERCS/erc-20.md").
        """
        parts = [part for part in path.replace("\\", "/").split("/") if part not in ("", ".", "..")]
        if len(parts) < 2:
            return None
        folder = parts[-2]

        candidates = [repo for repo in self.repositories if repo.proposals_folder == folder]
        if len(candidates) > 1:
            lowered = [part.lower() for part in parts]
            narrowed = [
                repo
                for repo in candidates
                if repo.owner.lower() in lowered and repo.repo.lower() in lowered
            ]
            candidates = narrowed or candidates
        return candidates[0] if candidates else None

    def resolve_moved(self) -> ResolveSummary:
        """
        Link every moved proposal to its destination proposal.

        Proposals whose destination cannot be mapped or has not been crawled
        yet are left unlinked and retried on the next pass.
        """
        summary = ResolveSummary()
        with self.database.get_session() as session:
            moved = (
                session.query(Proposal)
                .filter(Proposal.moved_to_path.isnot(None), Proposal.moved_to_id.is_(None))
                .all()
            )
            for proposal in moved:
                target = self._find_destination(session, proposal.moved_to_path)
                if target is None or target.id == proposal.id:
                    summary.unresolved += 1
                    logger.debug(
                        f"Unresolved move {proposal.protocol}-{proposal.proposal_number} "
                        f"-> {proposal.moved_to_path}"
                    )
                    continue
                proposal.moved_to_id = target.id
                summary.linked += 1
                logger.info(
                    f"Linked {proposal.protocol}-{proposal.proposal_number} -> "
                    f"{target.protocol}-{target.proposal_number}"
                )
            session.commit()

        logger.info(f"Resolved {summary.linked} moved proposals ({summary.unresolved} unresolved)")
        return summary

    def _find_destination(self, session, moved_to_path: str) -> Optional[Proposal]:
        repository = self.repository_for_path(moved_to_path)
        number = extract_proposal_number(posixpath.basename(moved_to_path))
        if repository is None or number is None:
            return None
        return (
            session.query(Proposal)
            .filter_by(protocol=repository.protocol, proposal_number=number)
            .first()
        )
