"""
Version store builder.

Turns the document states the crawler observes for a proposal, in the order
the crawl lists their commits, into its version history. Consecutive states
with the same status are collapsed into one version: the version keeps the
commit that introduced the status (``commit_sha``/``commit_date``) while its
descriptive fields (title, type, category, content, authors, ...) are
overwritten by the newest state and ``last_commit_sha``/``last_commit_date``
advance to that state's commit. Every collapsed commit is remembered in
``commit_shas`` so a commit is recognized again no matter where it sits.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Set

from sqlalchemy import desc

from config import RepositoryConfig
from config.settings import MOVED_STATUS
from iptracker.authors import AuthorIdentity
from iptracker.database import Database, Proposal, ProposalVersion, Repository

logger = logging.getLogger(__name__)


@dataclass
class DocumentState:
    """Parsed state of one proposal document at one commit."""

    commit_sha: str
    commit_date: datetime
    status: str
    title: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    created: Optional[datetime] = None
    discussions_to: Optional[str] = None
    requires: List[str] = field(default_factory=list)
    raw_markdown: str = ""
    content_hash: Optional[str] = None
    authors: List[AuthorIdentity] = field(default_factory=list)


@dataclass
class VersionRecord:
    """A version in a built history: the state it holds and the commits it spans."""

    commit_sha: str
    commit_date: datetime
    last_commit_sha: str
    last_commit_date: datetime
    state: DocumentState

    @property
    def status(self) -> str:
        return self.state.status


class RecordOutcome(str, Enum):
    CREATED = "created"
    COLLAPSED = "collapsed"
    DUPLICATE = "duplicate"


def collapses_into(latest_status: Optional[str], state: DocumentState) -> bool:
    """Whether a state folds into the version before it (only status gates collapsing)."""
    return latest_status is not None and latest_status == state.status


def recorded_commits(session, proposal_id: int) -> Set[str]:
    """Every commit SHA already folded into a proposal's versions."""
    shas: Set[str] = set()
    for version in session.query(ProposalVersion).filter_by(proposal_id=proposal_id):
        shas.update(version.recorded_commits)
    return shas


def build_version_history(states: Iterable[DocumentState]) -> List[VersionRecord]:
    """
    Build a consecutive-duplicate-free version history.

    States are taken in the order given, which is the order the crawl listed
    their commits; commit dates are not used for ordering. A commit SHA seen
    twice is ignored the second time.

    Args:
        states: Document states for one proposal, oldest commit first

    Returns:
        Versions with no two adjacent equal statuses
    """
    seen = set()
    history: List[VersionRecord] = []

    for state in states:
        if state.commit_sha in seen:
            continue
        seen.add(state.commit_sha)

        latest = history[-1] if history else None
        if latest is not None and collapses_into(latest.status, state):
            latest.state = state
            latest.last_commit_sha = state.commit_sha
            latest.last_commit_date = state.commit_date
        else:
            history.append(
                VersionRecord(
                    commit_sha=state.commit_sha,
                    commit_date=state.commit_date,
                    last_commit_sha=state.commit_sha,
                    last_commit_date=state.commit_date,
                    state=state,
                )
            )
    return history


class VersionStoreBuilder:
    """Persists document states as proposal versions."""

    def __init__(self, database: Database):
        """
        Initialize version store builder.

        Args:
            database: Database instance
        """
        self.database = database

    def record_state(
        self,
        config: RepositoryConfig,
        proposal_number: str,
        github_path: Optional[str],
        state: DocumentState,
        moved_to_path: Optional[str] = None,
    ) -> RecordOutcome:
        """
        Record one document state for a proposal in a single transaction.

        Creates the proposal on first sighting. A state whose commit is
        already part of the history is ignored, so re-ingestion never alters
        stored history. Commit dates play no part: the state collapses into,
        or follows, the most recently ingested version.

        Args:
            config: Repository the document belongs to
            proposal_number: Proposal number within the protocol
            github_path: Current document path
            state: Parsed document state
            moved_to_path: Destination path when the state is a move notice

        Returns:
            What happened to the state
        """
        with self.database.get_session() as session:
            proposal = (
                session.query(Proposal)
                .filter_by(protocol=config.protocol, proposal_number=proposal_number)
                .first()
            )
            if proposal is None:
                repository = (
                    session.query(Repository)
                    .filter_by(owner=config.owner, repo=config.repo, protocol=config.protocol)
                    .first()
                )
                proposal = Proposal(
                    repository_id=repository.id if repository else None,
                    protocol=config.protocol,
                    proposal_number=proposal_number,
                )
                session.add(proposal)
                session.flush()
                latest = None
            else:
                if state.commit_sha in recorded_commits(session, proposal.id):
                    logger.debug(
                        f"{config.protocol}-{proposal_number}: commit {state.commit_sha[:8]} already recorded"
                    )
                    return RecordOutcome.DUPLICATE
                latest = self._latest_version(session, proposal.id)

            authors = self._resolve_authors(session, state.authors)
            if latest is not None and collapses_into(latest.status, state):
                self._apply_state(latest, state)
                latest.authors = authors
                latest.commit_shas = latest.recorded_commits + [state.commit_sha]
                latest.last_commit_sha = state.commit_sha
                latest.last_commit_date = state.commit_date
                outcome = RecordOutcome.COLLAPSED
            else:
                version = ProposalVersion(
                    proposal_id=proposal.id,
                    commit_sha=state.commit_sha,
                    commit_date=state.commit_date,
                    last_commit_sha=state.commit_sha,
                    last_commit_date=state.commit_date,
                    commit_shas=[state.commit_sha],
                    indexed_at=int(time.time()),
                )
                self._apply_state(version, state)
                version.authors = authors
                session.add(version)
                outcome = RecordOutcome.CREATED

            if github_path:
                proposal.github_path = github_path
            proposal.title = state.title
            proposal.status = state.status
            proposal.type = state.type
            proposal.category = state.category
            proposal.created = state.created
            proposal.discussions_to = state.discussions_to
            proposal.requires = list(state.requires)
            if state.status == MOVED_STATUS:
                proposal.moved_to_path = moved_to_path
            proposal.updated_at = int(time.time())
            session.commit()

        logger.debug(f"{config.protocol}-{proposal_number}: {outcome.value} ({state.status})")
        return outcome

    @staticmethod
    def _latest_version(session, proposal_id: int) -> Optional[ProposalVersion]:
        return (
            session.query(ProposalVersion)
            .filter_by(proposal_id=proposal_id)
            .order_by(desc(ProposalVersion.id))
            .first()
        )

    def _resolve_authors(self, session, identities: List[AuthorIdentity]) -> list:
        authors = []
        seen_ids = set()
        for identity in identities:
            author = self.database.resolve_author(
                session, name=identity.name, email=identity.email, github_handle=identity.handle
            )
            if author is not None and author.id not in seen_ids:
                seen_ids.add(author.id)
                authors.append(author)
        return authors

    @staticmethod
    def _apply_state(version: ProposalVersion, state: DocumentState) -> None:
        version.status = state.status
        version.title = state.title
        version.type = state.type
        version.category = state.category
        version.created = state.created
        version.discussions_to = state.discussions_to
        version.requires = list(state.requires)
        version.raw_markdown = state.raw_markdown
        version.content_hash = state.content_hash
