"""Configuration layer and tracked repository table."""

from dataclasses import dataclass
from typing import List, Optional

from .settings import (
    CRAWL_CONCURRENCY,
    CRAWL_TIMEOUT,
    DATABASE_PATH,
    ENABLED_PROTOCOLS,
    GITHUB_API_URL,
    GITHUB_TOKEN,
    HTTP_TIMEOUT,
    LOG_FILE,
    LOG_LEVEL,
    RATE_LIMIT_MAX_RETRIES,
    RATE_LIMIT_MAX_WAIT,
)


@dataclass(frozen=True)
class RepositoryConfig:
    """One tracked improvement-proposal repository."""

    owner: str
    repo: str
    branch: str
    proposals_folder: str
    protocol: str
    proposal_prefix: str
    enabled: bool = True
    description: Optional[str] = None
    website: Optional[str] = None
    # Protocol of the repository this one was forked from (history continuation)
    forked_from: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


REPOSITORIES: List[RepositoryConfig] = [
    RepositoryConfig(
        owner="ethereum",
        repo="EIPs",
        branch="master",
        proposals_folder="EIPS",
        protocol="ethereum",
        proposal_prefix="EIP",
        description="Ethereum Improvement Proposals",
        website="https://eips.ethereum.org",
    ),
    RepositoryConfig(
        owner="ethereum",
        repo="RIPs",
        branch="master",
        proposals_folder="RIPS",
        protocol="rollup",
        proposal_prefix="RIP",
        description="Rollup Improvement Proposals",
        website="https://rip.ethereum.org",
    ),
    RepositoryConfig(
        owner="starknet-io",
        repo="SNIPs",
        branch="main",
        proposals_folder="SNIPS",
        protocol="starknet",
        proposal_prefix="SNIP",
        description="Starknet Improvement Proposals",
        website="https://github.com/starknet-io/SNIPs",
    ),
    RepositoryConfig(
        owner="ethereum",
        repo="ERCs",
        branch="master",
        proposals_folder="ERCS",
        protocol="erc",
        proposal_prefix="ERC",
        description="Ethereum Request for Comments",
        website="https://github.com/ethereum/ercs",
        forked_from="ethereum",
    ),
    RepositoryConfig(
        owner="maticnetwork",
        repo="Polygon-Improvement-Proposals",
        branch="main",
        proposals_folder="PIPs",
        protocol="polygon",
        proposal_prefix="PIP",
        description="Polygon Improvement Proposals",
        website="https://github.com/maticnetwork/Polygon-Improvement-Proposals",
    ),
]


class Config:
    GITHUB_TOKEN = GITHUB_TOKEN
    GITHUB_API_URL = GITHUB_API_URL
    HTTP_TIMEOUT = HTTP_TIMEOUT

    RATE_LIMIT_MAX_RETRIES = RATE_LIMIT_MAX_RETRIES
    RATE_LIMIT_MAX_WAIT = RATE_LIMIT_MAX_WAIT

    CRAWL_CONCURRENCY = CRAWL_CONCURRENCY
    CRAWL_TIMEOUT = CRAWL_TIMEOUT

    DATABASE_PATH = DATABASE_PATH

    LOG_LEVEL = LOG_LEVEL
    LOG_FILE = LOG_FILE

    ENABLED_PROTOCOLS = ENABLED_PROTOCOLS

    @classmethod
    def enabled_repositories(cls) -> List[RepositoryConfig]:
        """Tracked repositories that are enabled and pass the protocol filter."""
        return [
            repo
            for repo in REPOSITORIES
            if repo.enabled
            and (not cls.ENABLED_PROTOCOLS or repo.protocol in cls.ENABLED_PROTOCOLS)
        ]

    @classmethod
    def validate(cls) -> List[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages, empty if valid
        """
        errors = []

        if not cls.GITHUB_TOKEN:
            errors.append("GITHUB_TOKEN not set in .env")

        if not cls.DATABASE_PATH:
            errors.append("DATABASE_PATH not set in .env")

        if not cls.enabled_repositories():
            errors.append("No enabled repositories (check ENABLED_PROTOCOLS)")

        if cls.CRAWL_CONCURRENCY <= 0:
            errors.append("CRAWL_CONCURRENCY must be positive")

        return errors


__all__ = ["Config", "RepositoryConfig", "REPOSITORIES"]
