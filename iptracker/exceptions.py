"""
Exceptions for the proposal tracker.

Transient GitHub failures are retried inside the client; what escapes it is
either a non-retryable API error or an exhausted rate-limit budget, both of
which fail only the repository being crawled.
"""
from typing import Optional


class TrackerError(Exception):
    """Base exception for all tracker errors."""


class ConfigurationError(TrackerError):
    """Fatal: missing credentials or an unusable store. Aborts the whole run."""


class GitHubAPIError(TrackerError):
    """Non-retryable response from the GitHub API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceeded(GitHubAPIError):
    """Rate limit still in force after the configured number of retries."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=403)
        self.retry_after = retry_after


class MergeIntegrityError(TrackerError):
    """Canonical/redundant proposal pair is inconsistent; the merge is rolled back."""
