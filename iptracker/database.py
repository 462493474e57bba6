"""
Database module for storing and querying proposal history.
Uses SQLite with SQLAlchemy ORM.
"""

import logging
import time
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    desc,
    func,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from config import RepositoryConfig

logger = logging.getLogger(__name__)

Base = declarative_base()


def _now_ts() -> int:
    return int(time.time())


proposal_version_authors = Table(
    "proposal_version_authors",
    Base.metadata,
    Column(
        "proposal_version_id",
        Integer,
        ForeignKey("proposal_versions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("author_id", Integer, ForeignKey("authors.id"), primary_key=True),
)


class Repository(Base):
    """Tracked source repository and its crawl checkpoint."""

    __tablename__ = "repositories"
    __table_args__ = (UniqueConstraint("owner", "repo", "protocol"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String, nullable=False)
    repo = Column(String, nullable=False)
    protocol = Column(String, nullable=False, index=True)
    branch = Column(String, nullable=False)
    proposals_folder = Column(String, nullable=False)
    proposal_prefix = Column(String, nullable=False)
    enabled = Column(Boolean, default=True)
    description = Column(String)
    website = Column(String)
    forked_from = Column(String)
    last_crawled_commit_sha = Column(String)
    last_crawled_at = Column(Integer)

    def __repr__(self) -> str:
        return (
            f"<Repository({self.owner}/{self.repo}, protocol={self.protocol}, "
            f"checkpoint={self.last_crawled_commit_sha})>"
        )


class Proposal(Base):
    """Canonical proposal identity within one protocol."""

    __tablename__ = "proposals"
    __table_args__ = (UniqueConstraint("protocol", "proposal_number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id"), index=True)
    protocol = Column(String, nullable=False, index=True)
    proposal_number = Column(String, nullable=False)
    github_path = Column(String)
    title = Column(String)
    status = Column(String, index=True)
    type = Column(String)
    category = Column(String)
    created = Column(DateTime)
    discussions_to = Column(String)
    requires = Column(JSON, default=list)
    moved_to_path = Column(String)
    moved_to_id = Column(Integer, ForeignKey("proposals.id"), index=True)
    updated_at = Column(Integer)

    versions = relationship(
        "ProposalVersion",
        back_populates="proposal",
        order_by="ProposalVersion.commit_date",
    )

    def __repr__(self) -> str:
        return f"<Proposal({self.protocol}-{self.proposal_number}, status={self.status})>"


class ProposalVersion(Base):
    """Immutable snapshot of a proposal document at one commit.

    ``commit_sha``/``commit_date`` mark the commit that introduced the
    version's status. Later commits that leave the status unchanged are folded
    into the same row: they overwrite the descriptive fields and advance
    ``last_commit_sha``/``last_commit_date``. ``commit_shas`` lists every
    commit folded into the row, so re-ingestion can recognize each of them.
    """

    __tablename__ = "proposal_versions"
    __table_args__ = (UniqueConstraint("proposal_id", "commit_sha"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), index=True, nullable=False)
    commit_sha = Column(String, nullable=False, index=True)
    commit_date = Column(DateTime, nullable=False, index=True)
    last_commit_sha = Column(String)
    last_commit_date = Column(DateTime)
    commit_shas = Column(JSON, default=list)
    raw_markdown = Column(Text, default="")
    content_hash = Column(String)
    title = Column(String)
    status = Column(String)
    type = Column(String)
    category = Column(String)
    created = Column(DateTime)
    discussions_to = Column(String)
    requires = Column(JSON, default=list)
    indexed_at = Column(Integer)

    proposal = relationship("Proposal", back_populates="versions")
    authors = relationship("Author", secondary=proposal_version_authors, lazy="selectin")

    @property
    def recorded_commits(self) -> List[str]:
        """Every commit folded into this version, oldest first."""
        shas = list(self.commit_shas or [])
        for sha in (self.commit_sha, self.last_commit_sha):
            if sha and sha not in shas:
                shas.append(sha)
        return shas

    def __repr__(self) -> str:
        return (
            f"<ProposalVersion(proposal={self.proposal_id}, sha={self.commit_sha[:8]}, "
            f"status={self.status})>"
        )


class Author(Base):
    """Deduplicated author identity."""

    __tablename__ = "authors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, index=True)
    email = Column(String, unique=True)
    github_handle = Column(String, unique=True)

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.github_handle

    def __repr__(self) -> str:
        return f"<Author(name={self.name}, handle={self.github_handle})>"


class Maintainer(Base):
    """Commit author observed on a tracked repository."""

    __tablename__ = "maintainers"
    __table_args__ = (UniqueConstraint("author_id", "repository_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    author_id = Column(Integer, ForeignKey("authors.id"), nullable=False)
    repository_id = Column(Integer, ForeignKey("repositories.id"), nullable=False)
    first_seen_at = Column(Integer)


class ProtocolStatsSnapshot(Base):
    """Aggregate statistics for one protocol as of the end of one month."""

    __tablename__ = "protocol_stats_snapshots"
    __table_args__ = (UniqueConstraint("protocol", "year", "month"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    protocol = Column(String, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    snapshot_date = Column(DateTime, nullable=False)
    total_proposals = Column(Integer, default=0)
    distinct_authors_count = Column(Integer, default=0)
    authors_on_finalized_count = Column(Integer, default=0)
    acceptance_score = Column(Float, default=0.0)
    total_word_count = Column(Integer, default=0)
    average_word_count = Column(Float, default=0.0)
    status_counts = Column(JSON, default=dict)
    type_counts = Column(JSON, default=dict)
    year_counts = Column(JSON, default=dict)
    computed_at = Column(Integer)

    tracks = relationship(
        "TrackStatsSnapshot",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ProtocolStatsSnapshot({self.protocol} {self.year}-{self.month:02d}, "
            f"total={self.total_proposals})>"
        )


class TrackStatsSnapshot(Base):
    """Per-track breakdown attached to a protocol snapshot."""

    __tablename__ = "track_stats_snapshots"
    __table_args__ = (UniqueConstraint("snapshot_id", "track_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(Integer, ForeignKey("protocol_stats_snapshots.id"), nullable=False)
    track_name = Column(String, nullable=False)
    total_proposals_in_track = Column(Integer, default=0)
    finalized_proposals_in_track = Column(Integer, default=0)
    distinct_authors_in_track_count = Column(Integer, default=0)
    authors_on_finalized_in_track_count = Column(Integer, default=0)
    acceptance_score_for_track = Column(Float, default=0.0)
    status_counts_in_track = Column(JSON, default=dict)

    snapshot = relationship("ProtocolStatsSnapshot", back_populates="tracks")


class GlobalStatsSnapshot(Base):
    """Aggregate of every protocol snapshot for one month."""

    __tablename__ = "global_stats_snapshots"
    __table_args__ = (UniqueConstraint("year", "month"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    snapshot_date = Column(DateTime, nullable=False)
    total_proposals = Column(Integer, default=0)
    distinct_authors_count = Column(Integer, default=0)
    authors_on_finalized_count = Column(Integer, default=0)
    acceptance_rate = Column(Float, default=0.0)
    centralization_rate = Column(Float, default=0.0)
    computed_at = Column(Integer)

    def __repr__(self) -> str:
        return f"<GlobalStatsSnapshot({self.year}-{self.month:02d}, total={self.total_proposals})>"


class Database:
    """Database interface for proposal history."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.engine = create_engine(f"sqlite:///{db_path}")
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database initialized: {db_path}")

    def create_tables(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.Session()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # Repository operations
    def seed_repositories(self, configs: Iterable[RepositoryConfig]) -> int:
        """
        Upsert tracked repository configuration rows.

        Checkpoints of existing rows are left untouched.

        Returns:
            Number of repositories seeded
        """
        count = 0
        with self.get_session() as session:
            for config in configs:
                repository = (
                    session.query(Repository)
                    .filter_by(owner=config.owner, repo=config.repo, protocol=config.protocol)
                    .first()
                )
                if repository is None:
                    repository = Repository(
                        owner=config.owner, repo=config.repo, protocol=config.protocol
                    )
                    session.add(repository)
                repository.branch = config.branch
                repository.proposals_folder = config.proposals_folder
                repository.proposal_prefix = config.proposal_prefix
                repository.enabled = config.enabled
                repository.description = config.description
                repository.website = config.website
                repository.forked_from = config.forked_from
                count += 1
            session.commit()
        logger.info(f"Seeded {count} repository configurations")
        return count

    def get_repository(self, config: RepositoryConfig) -> Optional[Repository]:
        """Get the stored row for a repository configuration."""
        with self.get_session() as session:
            return (
                session.query(Repository)
                .filter_by(owner=config.owner, repo=config.repo, protocol=config.protocol)
                .first()
            )

    def get_all_repositories(self, enabled_only: bool = True) -> List[Repository]:
        """Get all stored repositories."""
        with self.get_session() as session:
            query = session.query(Repository)
            if enabled_only:
                query = query.filter_by(enabled=True)
            return query.order_by(Repository.id).all()

    def get_checkpoint(self, config: RepositoryConfig) -> Optional[str]:
        """Get the last crawled commit SHA for a repository."""
        repository = self.get_repository(config)
        return repository.last_crawled_commit_sha if repository else None

    def advance_checkpoint(self, config: RepositoryConfig, commit_sha: str) -> None:
        """Record a commit as fully processed for a repository."""
        with self.get_session() as session:
            repository = (
                session.query(Repository)
                .filter_by(owner=config.owner, repo=config.repo, protocol=config.protocol)
                .first()
            )
            if repository is None:
                raise LookupError(f"Repository {config.full_name} has not been seeded")
            repository.last_crawled_commit_sha = commit_sha
            repository.last_crawled_at = _now_ts()
            session.commit()
            logger.debug(f"Checkpoint for {config.full_name} advanced to {commit_sha[:8]}")

    def reset_checkpoints(self) -> int:
        """
        Clear every repository checkpoint to force full re-ingestion.

        Returns:
            Number of repositories reset
        """
        with self.get_session() as session:
            count = session.query(Repository).update(
                {Repository.last_crawled_commit_sha: None}, synchronize_session=False
            )
            session.commit()
        logger.info(f"Reset crawl checkpoints for {count} repositories")
        return count

    def get_enabled_protocols(self) -> List[str]:
        """Distinct protocols of enabled repositories, in seeding order."""
        protocols: List[str] = []
        for repository in self.get_all_repositories(enabled_only=True):
            if repository.protocol not in protocols:
                protocols.append(repository.protocol)
        return protocols

    # Proposal operations
    def get_proposal(self, protocol: str, proposal_number: str) -> Optional[Proposal]:
        """Get a proposal by its protocol-scoped key."""
        with self.get_session() as session:
            return (
                session.query(Proposal)
                .filter_by(protocol=protocol, proposal_number=proposal_number)
                .first()
            )

    def get_proposals(self, protocol: str) -> List[Proposal]:
        """Get all proposals for a protocol."""
        with self.get_session() as session:
            return (
                session.query(Proposal)
                .filter_by(protocol=protocol)
                .order_by(Proposal.id)
                .all()
            )

    def get_versions(self, proposal_id: int) -> List[ProposalVersion]:
        """Get the ordered version history of a proposal."""
        with self.get_session() as session:
            return (
                session.query(ProposalVersion)
                .filter_by(proposal_id=proposal_id)
                .order_by(ProposalVersion.commit_date, ProposalVersion.id)
                .all()
            )

    def count_versions(self, proposal_id: Optional[int] = None) -> int:
        """Count versions of one proposal, or of every proposal."""
        with self.get_session() as session:
            query = session.query(func.count(ProposalVersion.id))
            if proposal_id is not None:
                query = query.filter(ProposalVersion.proposal_id == proposal_id)
            return query.scalar() or 0

    def get_activity_bounds(self) -> Optional[Tuple[datetime, datetime]]:
        """
        First and last commit dates across all stored versions.

        Returns:
            (first, last) tuple, or None when nothing has been ingested
        """
        with self.get_session() as session:
            first, last = session.query(
                func.min(ProposalVersion.commit_date),
                func.max(func.coalesce(ProposalVersion.last_commit_date, ProposalVersion.commit_date)),
            ).one()
        if first is None or last is None:
            return None
        return first, last

    # Author operations
    def resolve_author(
        self,
        session: Session,
        name: Optional[str] = None,
        email: Optional[str] = None,
        github_handle: Optional[str] = None,
    ) -> Optional[Author]:
        """
        Find or create the Author matching an identity.

        Lookup order is handle, then email, then a name with exactly one match.
        Missing fields of a matched author are filled in when that does not
        collide with another author. Runs inside the caller's session.

        Returns:
            Author row, or None when the identity is empty
        """
        if not (name or email or github_handle):
            return None

        author = None
        if github_handle:
            author = session.query(Author).filter_by(github_handle=github_handle).first()
        if author is None and email:
            author = session.query(Author).filter_by(email=email).first()
        if author is None and name:
            by_name = session.query(Author).filter_by(name=name).limit(2).all()
            if len(by_name) == 1:
                author = by_name[0]

        if author is None:
            author = Author(name=name, email=email, github_handle=github_handle)
            session.add(author)
            session.flush()
            return author

        if name and not author.name:
            author.name = name
        if email and not author.email:
            if session.query(Author).filter_by(email=email).first() is None:
                author.email = email
        if github_handle and not author.github_handle:
            if session.query(Author).filter_by(github_handle=github_handle).first() is None:
                author.github_handle = github_handle
        session.flush()
        return author

    def record_maintainer(
        self,
        config: RepositoryConfig,
        name: Optional[str],
        email: Optional[str],
        github_handle: Optional[str],
    ) -> None:
        """Record a commit author as maintainer of a repository."""
        with self.get_session() as session:
            repository = (
                session.query(Repository)
                .filter_by(owner=config.owner, repo=config.repo, protocol=config.protocol)
                .first()
            )
            if repository is None:
                return
            author = self.resolve_author(session, name=name, email=email, github_handle=github_handle)
            if author is None:
                return
            exists = (
                session.query(Maintainer)
                .filter_by(author_id=author.id, repository_id=repository.id)
                .first()
            )
            if not exists:
                session.add(
                    Maintainer(
                        author_id=author.id,
                        repository_id=repository.id,
                        first_seen_at=_now_ts(),
                    )
                )
            session.commit()

    def get_maintainers(self, config: RepositoryConfig) -> List[Author]:
        """Authors recorded as maintainers of a repository."""
        with self.get_session() as session:
            return (
                session.query(Author)
                .join(Maintainer, Maintainer.author_id == Author.id)
                .join(Repository, Repository.id == Maintainer.repository_id)
                .filter(
                    Repository.owner == config.owner,
                    Repository.repo == config.repo,
                    Repository.protocol == config.protocol,
                )
                .all()
            )

    # Snapshot operations
    def get_protocol_snapshot(
        self, protocol: str, year: int, month: int
    ) -> Optional[ProtocolStatsSnapshot]:
        """Get the stored snapshot for (protocol, year, month)."""
        with self.get_session() as session:
            return (
                session.query(ProtocolStatsSnapshot)
                .filter_by(protocol=protocol, year=year, month=month)
                .first()
            )

    def get_latest_protocol_snapshot(self, protocol: str) -> Optional[ProtocolStatsSnapshot]:
        """Get the most recent snapshot for a protocol."""
        with self.get_session() as session:
            return (
                session.query(ProtocolStatsSnapshot)
                .filter_by(protocol=protocol)
                .order_by(desc(ProtocolStatsSnapshot.year), desc(ProtocolStatsSnapshot.month))
                .first()
            )

    def get_protocol_snapshots_for_month(self, year: int, month: int) -> List[ProtocolStatsSnapshot]:
        """Get every protocol snapshot for one month."""
        with self.get_session() as session:
            return (
                session.query(ProtocolStatsSnapshot)
                .filter_by(year=year, month=month)
                .order_by(ProtocolStatsSnapshot.protocol)
                .all()
            )

    def get_snapshot_month_bounds(self) -> Optional[Tuple[datetime, datetime]]:
        """First and last snapshot dates across protocol snapshots."""
        with self.get_session() as session:
            first, last = session.query(
                func.min(ProtocolStatsSnapshot.snapshot_date),
                func.max(ProtocolStatsSnapshot.snapshot_date),
            ).one()
        if first is None or last is None:
            return None
        return first, last

    def count_protocol_snapshots(self, protocol: Optional[str] = None) -> int:
        """Count stored protocol snapshots."""
        with self.get_session() as session:
            query = session.query(func.count(ProtocolStatsSnapshot.id))
            if protocol is not None:
                query = query.filter(ProtocolStatsSnapshot.protocol == protocol)
            return query.scalar() or 0

    def get_global_snapshot(self, year: int, month: int) -> Optional[GlobalStatsSnapshot]:
        """Get the global snapshot for one month."""
        with self.get_session() as session:
            return session.query(GlobalStatsSnapshot).filter_by(year=year, month=month).first()
