"""
Configuration constants and settings for the proposal tracker.

Centralizes all configuration including:
- GitHub API access
- Database paths
- Crawl limits (concurrency, timeouts, rate-limit retries)
- Logging
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ═══ GitHub ═══
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", os.getenv("GITHUB_PAT", ""))
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30") or "30")

# ═══ Rate limiting ═══
RATE_LIMIT_MAX_RETRIES = int(os.getenv("RATE_LIMIT_MAX_RETRIES", "3") or "3")
RATE_LIMIT_MAX_WAIT = float(os.getenv("RATE_LIMIT_MAX_WAIT", "3600") or "3600")

# ═══ Crawl ═══
CRAWL_CONCURRENCY = int(os.getenv("CRAWL_CONCURRENCY", "4") or "4")
CRAWL_TIMEOUT = float(os.getenv("CRAWL_TIMEOUT", "21600") or "21600")  # 6 hours
COMMITS_PER_PAGE = 100

# ═══ Database ═══
DATABASE_PATH = os.getenv("DATABASE_PATH", "proposals.db")

# ═══ Logging ═══
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")

# ═══ Protocols ═══
# Comma-separated protocol filter; empty means every enabled repository.
ENABLED_PROTOCOLS = [
    p.strip() for p in os.getenv("ENABLED_PROTOCOLS", "").split(",") if p.strip()
]

# ═══ Statuses ═══
FINALIZED_STATUSES = ("Final", "Living")
INELIGIBLE_STATUSES = ("Withdrawn", "Stagnant")
DELETED_STATUS = "Deleted"
MOVED_STATUS = "Moved"
UNKNOWN = "Unknown"
