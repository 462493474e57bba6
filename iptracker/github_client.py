"""
GitHub REST client for crawling proposal repositories.
Uses httpx.AsyncClient; rate-limit and transient failures are retried here.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx

from config import Config
from config.settings import COMMITS_PER_PAGE
from iptracker.exceptions import GitHubAPIError, RateLimitExceeded
from iptracker.utils import parse_github_datetime

logger = logging.getLogger(__name__)

TRANSIENT_RETRIES = 3
TRANSIENT_BASE_DELAY = 1.0
SECONDARY_LIMIT_WAIT = 60.0
SECONDARY_LIMIT_MESSAGE = "secondary rate limit"


@dataclass(frozen=True)
class CommitInfo:
    """One entry of a repository's commit listing."""

    sha: str
    date: datetime
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    author_login: Optional[str] = None


@dataclass(frozen=True)
class CommitFile:
    """One file touched by a commit."""

    filename: str
    status: str
    previous_filename: Optional[str] = None


def _commit_from_json(item: dict) -> CommitInfo:
    # Committer date moves forward when a commit is rebased onto the branch;
    # the author date keeps the original authoring time
    commit = item.get("commit") or {}
    author = commit.get("author") or {}
    committer = commit.get("committer") or {}
    login = (item.get("author") or {}).get("login")
    return CommitInfo(
        sha=item["sha"],
        date=parse_github_datetime(committer.get("date") or author.get("date")),
        author_name=author.get("name"),
        author_email=author.get("email"),
        author_login=login,
    )


class GitHubClient:
    """Async client for the GitHub REST API."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        max_wait: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize GitHub client.

        Args:
            token: Personal access token (defaults to GITHUB_TOKEN)
            base_url: API root (defaults to GITHUB_API_URL)
            timeout: Per-request timeout in seconds
            max_retries: Rate-limit retries before giving up
            max_wait: Ceiling for a single provider-requested wait, in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used for backoff waits
        """
        self.token = token if token is not None else Config.GITHUB_TOKEN
        self.max_retries = max_retries if max_retries is not None else Config.RATE_LIMIT_MAX_RETRIES
        self.max_wait = max_wait if max_wait is not None else Config.RATE_LIMIT_MAX_WAIT
        self._sleep = sleep

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        self._client = httpx.AsyncClient(
            base_url=base_url or Config.GITHUB_API_URL,
            headers=headers,
            timeout=httpx.Timeout(timeout or Config.HTTP_TIMEOUT, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _rate_limit_wait(self, response: httpx.Response) -> Optional[float]:
        """
        Seconds to wait if a response signals rate limiting, else None.

        Secondary limits carry a Retry-After header, or only say so in the
        response message; primary limits report an exhausted
        X-RateLimit-Remaining with the reset epoch.
        """
        if response.status_code not in (403, 429):
            return None

        retry_after = response.headers.get("retry-after")
        if retry_after is not None:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                return 60.0

        if response.headers.get("x-ratelimit-remaining") == "0":
            reset = response.headers.get("x-ratelimit-reset")
            if reset is not None:
                try:
                    return max(float(reset) - time.time(), 0.0) + 1.0
                except ValueError:
                    pass
            return 60.0

        if response.status_code == 403 and SECONDARY_LIMIT_MESSAGE in response.text.lower():
            return SECONDARY_LIMIT_WAIT

        if response.status_code == 429:
            return 60.0
        return None

    async def _request(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        """
        GET a path, retrying rate limits and transient failures.

        Returns:
            Successful response, or a 404 response (callers decide what missing means)

        Raises:
            RateLimitExceeded: Rate limit still in force after max_retries waits
            GitHubAPIError: Any other non-success response or persistent transport failure
        """
        rate_limit_attempts = 0
        transient_attempts = 0
        delay = TRANSIENT_BASE_DELAY

        while True:
            try:
                response = await self._client.get(path, params=params)
            except httpx.TransportError as e:
                transient_attempts += 1
                if transient_attempts > TRANSIENT_RETRIES:
                    raise GitHubAPIError(f"GET {path} failed: {e}") from e
                logger.warning(
                    f"GET {path} failed (attempt {transient_attempts}/{TRANSIENT_RETRIES}): {e}"
                )
                await self._sleep(delay)
                delay *= 2
                continue

            wait = self._rate_limit_wait(response)
            if wait is not None:
                rate_limit_attempts += 1
                if rate_limit_attempts > self.max_retries:
                    raise RateLimitExceeded(
                        f"Rate limit exceeded for GET {path} after {self.max_retries} retries",
                        retry_after=wait,
                    )
                wait = min(wait, self.max_wait)
                logger.warning(
                    f"Rate limited on GET {path}, waiting {wait:.0f}s "
                    f"(retry {rate_limit_attempts}/{self.max_retries})"
                )
                await self._sleep(wait)
                continue

            if response.status_code >= 500:
                transient_attempts += 1
                if transient_attempts > TRANSIENT_RETRIES:
                    raise GitHubAPIError(
                        f"GET {path} returned {response.status_code}", status_code=response.status_code
                    )
                logger.warning(
                    f"GET {path} returned {response.status_code} "
                    f"(attempt {transient_attempts}/{TRANSIENT_RETRIES})"
                )
                await self._sleep(delay)
                delay *= 2
                continue

            if response.status_code == 404 or response.is_success:
                return response

            raise GitHubAPIError(
                f"GET {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    async def list_commits(
        self,
        owner: str,
        repo: str,
        branch: str,
        stop_at_sha: Optional[str] = None,
    ) -> Tuple[List[CommitInfo], bool]:
        """
        List commits on a branch newer than a checkpoint.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Branch to walk
            stop_at_sha: Checkpoint commit; listing stops when it is reached

        Returns:
            (commits oldest-first, whether the checkpoint was found)
        """
        commits: List[CommitInfo] = []
        page = 1
        found = False

        while True:
            response = await self._request(
                f"/repos/{owner}/{repo}/commits",
                params={"sha": branch, "per_page": COMMITS_PER_PAGE, "page": page},
            )
            if response.status_code == 404:
                raise GitHubAPIError(f"Repository {owner}/{repo}@{branch} not found", status_code=404)

            items = response.json()
            for item in items:
                if stop_at_sha and item["sha"] == stop_at_sha:
                    found = True
                    break
                commits.append(_commit_from_json(item))

            if found or len(items) < COMMITS_PER_PAGE:
                break
            page += 1

        logger.info(f"Listed {len(commits)} new commits for {owner}/{repo}@{branch}")
        commits.reverse()
        return commits, found

    async def get_commit_files(self, owner: str, repo: str, sha: str) -> List[CommitFile]:
        """
        Get the files touched by a commit.

        Args:
            owner: Repository owner
            repo: Repository name
            sha: Commit SHA

        Returns:
            Changed files with their status (added, modified, renamed, removed)
        """
        files: List[CommitFile] = []
        page = 1
        while True:
            response = await self._request(
                f"/repos/{owner}/{repo}/commits/{sha}",
                params={"per_page": COMMITS_PER_PAGE, "page": page},
            )
            if response.status_code == 404:
                raise GitHubAPIError(f"Commit {sha} not found in {owner}/{repo}", status_code=404)

            batch = response.json().get("files") or []
            for item in batch:
                files.append(
                    CommitFile(
                        filename=item["filename"],
                        status=item.get("status", "modified"),
                        previous_filename=item.get("previous_filename"),
                    )
                )
            if len(batch) < COMMITS_PER_PAGE:
                break
            page += 1
        return files

    async def get_content(self, owner: str, repo: str, path: str, ref: str) -> Optional[str]:
        """
        Get a file's decoded content at a commit.

        Returns:
            File text, or None when the path does not exist at that ref
        """
        response = await self._request(f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})
        if response.status_code == 404:
            return None

        data = response.json()
        if not isinstance(data, dict) or data.get("content") is None:
            return None
        if data.get("encoding", "base64") != "base64":
            return data["content"]
        return base64.b64decode(data["content"]).decode("utf-8", errors="replace")
