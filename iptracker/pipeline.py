"""
Full ingestion pipeline: collect -> resolve -> snapshot.

Repositories are crawled concurrently, except that a forked repository and
its origin form one group that is crawled and merged sequentially, since
both produce records for the same proposal numbers.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from analysis.snapshots import SnapshotEngine
from config import Config, RepositoryConfig
from iptracker.crawler import CrawlResult, RepositoryCrawler
from iptracker.database import Database
from iptracker.exceptions import ConfigurationError
from iptracker.github_client import GitHubClient
from iptracker.merger import HistoryMerger, MergeResult
from iptracker.resolver import MovedProposalResolver

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """What a pipeline run processed and what failed."""

    crawls: List[CrawlResult] = field(default_factory=list)
    merges: List[MergeResult] = field(default_factory=list)
    moved_linked: int = 0
    snapshots_computed: int = 0
    snapshots_failed: int = 0
    timed_out: List[str] = field(default_factory=list)

    @property
    def repositories_processed(self) -> int:
        return sum(1 for c in self.crawls if c.succeeded)

    @property
    def repositories_failed(self) -> int:
        return sum(1 for c in self.crawls if not c.succeeded) + len(self.timed_out)

    @property
    def processed(self) -> int:
        return (
            self.repositories_processed
            + sum(1 for m in self.merges if m.succeeded and not m.skipped)
            + self.snapshots_computed
        )

    @property
    def failed(self) -> int:
        return (
            self.repositories_failed
            + sum(1 for m in self.merges if not m.succeeded)
            + self.snapshots_failed
        )

    @property
    def total_failure(self) -> bool:
        """Every repository attempted failed."""
        attempted = len(self.crawls) + len(self.timed_out)
        return attempted > 0 and self.repositories_processed == 0


def crawl_groups(repositories: List[RepositoryConfig]) -> List[List[RepositoryConfig]]:
    """
    Partition repositories into groups that must be crawled sequentially.

    A repository forked from another protocol joins that protocol's group,
    after it. Every other repository is a group of its own.
    """
    groups: List[List[RepositoryConfig]] = []
    group_of: Dict[str, List[RepositoryConfig]] = {}

    for repo in repositories:
        if not repo.forked_from:
            group = [repo]
            groups.append(group)
            group_of[repo.protocol] = group

    for repo in repositories:
        if repo.forked_from:
            group = group_of.get(repo.forked_from)
            if group is None:
                group = []
                groups.append(group)
            group.append(repo)
            group_of[repo.protocol] = group
    return groups


class Pipeline:
    """Runs the collect, resolve and snapshot stages in order."""

    def __init__(
        self,
        database: Database,
        client: Optional[GitHubClient] = None,
        repositories: Optional[List[RepositoryConfig]] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize pipeline.

        Args:
            database: Database instance
            client: GitHub client; one is created (and closed) per run if omitted
            repositories: Repositories to process (defaults to enabled ones)
            concurrency: Maximum crawl groups in flight
            timeout: Overall collection timeout in seconds
        """
        self.database = database
        self.client = client
        self.repositories = repositories if repositories is not None else Config.enabled_repositories()
        self.concurrency = concurrency or Config.CRAWL_CONCURRENCY
        self.timeout = timeout or Config.CRAWL_TIMEOUT
        self.merger = HistoryMerger(database, self.repositories)
        self.resolver = MovedProposalResolver(database)
        self.snapshots = SnapshotEngine(database)

    def prepare(self) -> None:
        """Create tables and seed repositories; store failures are fatal."""
        try:
            self.database.create_tables()
            self.database.seed_repositories(self.repositories)
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Store unusable at {self.database.db_path}: {e}") from e

    async def run(self, now: Optional[datetime] = None) -> RunSummary:
        """
        Run the full pipeline once.

        Raises:
            ConfigurationError: Missing credentials or unusable store

        Returns:
            RunSummary of the run
        """
        if not self.repositories:
            raise ConfigurationError("No enabled repositories to process")
        self.prepare()

        summary = RunSummary()
        owns_client = self.client is None
        if owns_client:
            if not Config.GITHUB_TOKEN:
                raise ConfigurationError("GITHUB_TOKEN not set")
            self.client = GitHubClient()

        try:
            logger.info(f"Collecting {len(self.repositories)} repositories")
            await self.collect(summary)
        finally:
            if owns_client:
                await self.client.close()
                self.client = None

        logger.info("Resolving moved proposals")
        summary.moved_linked = self.resolver.resolve_moved().linked

        logger.info("Snapshotting latest month")
        protocols = sorted({repo.protocol for repo in self.repositories})
        snapshot_summary = self.snapshots.update_latest(protocols, now=now)
        summary.snapshots_computed = snapshot_summary.computed
        summary.snapshots_failed = snapshot_summary.failed

        logger.info(
            f"Run complete: {summary.processed} processed, {summary.failed} failed "
            f"({summary.repositories_processed} repositories ok, "
            f"{summary.repositories_failed} failed)"
        )
        return summary

    async def collect(self, summary: RunSummary) -> None:
        """
        Crawl every group under the concurrency limit and overall timeout.

        Groups still running at the timeout are cancelled and their
        repositories reported as timed out; their checkpoints stay at the
        last fully processed commit.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        groups = crawl_groups(self.repositories)
        tasks = {
            asyncio.ensure_future(self._run_group(group, semaphore, summary)): group for group in groups
        }

        done, pending = await asyncio.wait(list(tasks), timeout=self.timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                finished = {c.repository for c in summary.crawls}
                for repo in tasks[task]:
                    if repo.full_name not in finished:
                        summary.timed_out.append(repo.full_name)
            logger.error(f"Collection timed out after {self.timeout:.0f}s: {summary.timed_out}")

        for task in done:
            error = task.exception()
            if error is not None:
                # Only non-crawl errors reach here (e.g. store failures in a group)
                logger.error(f"Crawl group {[r.full_name for r in tasks[task]]} failed: {error}")
                finished = {c.repository for c in summary.crawls}
                for repo in tasks[task]:
                    if repo.full_name not in finished:
                        summary.crawls.append(CrawlResult(repository=repo.full_name, error=str(error)))

    async def _run_group(
        self, group: List[RepositoryConfig], semaphore: asyncio.Semaphore, summary: RunSummary
    ) -> None:
        crawler = RepositoryCrawler(self.database, self.client, resolver=self.resolver)
        async with semaphore:
            for repo in group:
                summary.crawls.append(await crawler.crawl(repo))

            for repo in group:
                if repo.forked_from:
                    merged = self.merger.merge_protocols(repo.protocol, repo.forked_from)
                    summary.merges.extend(merged.results)
