"""
Worker configuration for parallel ad-count scraping.

Centralizes all settings for partitioning, browser contexts, delays,
retries, lifecycle thresholds, logging, export and the database.
"""

import os
import socket
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Mapping, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class ConfigError(ValueError):
    """Invalid worker configuration."""


DEFAULT_DEVICE_NAMES = [
    "Desktop Chrome",
    "iPhone 13 Pro Max",
    "iPhone 12",
    "Pixel 7",
    "Pixel 5",
    "Galaxy S21 Ultra",
    "iPad Mini",
]

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2_1) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.3 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
]

DEFAULT_BLOCK_INDICATORS = [
    "captcha",
    "verify",
    "temporarily blocked",
    "unusual activity",
    "confirm you're human",
    "log in to facebook",
    "sign in to continue",
    "please enable javascript",
    "blocked",
]

PRIMARY_SELECTOR = 'div[role="heading"][aria-level="3"]'

DEFAULT_SECONDARY_SELECTORS = [
    'div[role="heading"]',
    "h3",
    "h2",
    'div:has-text("resultados")',
    'span:has-text("resultados")',
    'div:has-text("results")',
    'span:has-text("results")',
    'div[class*="counter"]',
    'div[class*="results"]',
]

BLOCKED_RESOURCE_TYPES = ["image", "stylesheet", "font", "media"]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() == "true"


def _env_list(env: Mapping[str, str], name: str, default: List[str], sep: str = ",") -> List[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [part.strip() for part in raw.split(sep) if part.strip()]


def default_worker_id() -> str:
    """Unique worker identifier: hostname-pid-millis."""
    return f"{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}"


def default_partition_seed() -> str:
    """Workers started on the same UTC day share a permutation."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class WorkerConfig:
    """Configuration for one ad-count worker process."""

    # ===== DATABASE =====
    database_url: Optional[str] = None

    # ===== PARTITIONING =====
    total_workers: int = 4
    worker_index: int = 0
    worker_id: str = field(default_factory=default_worker_id)
    partition_seed: str = field(default_factory=default_partition_seed)
    process_limit: Optional[int] = None
    only_missing: bool = False

    # ===== CONCURRENCY =====
    parallel: int = 3
    min_parallel: int = 1
    max_parallel: Optional[int] = None  # defaults to parallel
    fail_high_water: int = 8
    success_low_water: int = 5

    # ===== BROWSER CONTEXTS =====
    context_pool_size: Optional[int] = None  # defaults to parallel
    max_uses_per_context: int = 50
    headless: bool = True
    device_names: List[str] = field(default_factory=lambda: list(DEFAULT_DEVICE_NAMES))
    user_agents: List[str] = field(default_factory=lambda: list(DEFAULT_USER_AGENTS))
    blocked_resource_types: List[str] = field(default_factory=lambda: list(BLOCKED_RESOURCE_TYPES))

    # ===== TIMING (milliseconds) =====
    wait_time_ms: int = 7000
    wait_jitter_ms: int = 800
    nav_timeout_ms: int = 90000
    selector_timeout_ms: int = 15000
    long_pause_every: int = 100

    # ===== RETRY & LIFECYCLE =====
    retry_attempts: int = 1
    retry_backoff_factor: float = 1.0
    max_fails: int = 3
    lease_ttl_seconds: int = 900

    # ===== EXTRACTION =====
    primary_selector: str = PRIMARY_SELECTOR
    secondary_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_SECONDARY_SELECTORS))
    block_indicators: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCK_INDICATORS))

    # ===== STATUS LABELS (diagnostic only) =====
    status_blocked_label: str = "blocked"
    status_no_counter_label: str = "no_counter"
    status_error_label: str = "error"

    # ===== DEBUG & LOGGING =====
    debug: bool = False
    debug_dir: str = "./debug_html"
    log_dir: str = "logs"  # "none" disables log files
    log_level: str = "INFO"

    # ===== EXPORT =====
    export_upload_url: Optional[str] = None

    def __post_init__(self):
        if self.max_parallel is None:
            self.max_parallel = self.parallel
        if self.context_pool_size is None:
            self.context_pool_size = self.parallel

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "WorkerConfig":
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read from (default: os.environ)

        Returns:
            Validated WorkerConfig

        Raises:
            ConfigError: On malformed or out-of-range values
        """
        env = os.environ if env is None else env
        parallel = max(1, _env_int(env, "PARALLEL", 3))

        config = cls(
            database_url=env.get("DATABASE_URL"),
            total_workers=_env_int(env, "TOTAL_WORKERS", 4),
            worker_index=_env_int(env, "WORKER_INDEX", 0),
            worker_id=env.get("WORKER_ID") or default_worker_id(),
            partition_seed=env.get("PARTITION_SEED") or default_partition_seed(),
            process_limit=_env_int(env, "PROCESS_LIMIT", None),
            only_missing=_env_bool(env, "ONLY_MISSING", False),
            parallel=parallel,
            min_parallel=max(1, _env_int(env, "MIN_PARALLEL", 1)),
            max_parallel=_env_int(env, "MAX_PARALLEL", parallel),
            fail_high_water=_env_int(env, "FAIL_HIGH_WATER", 8),
            success_low_water=_env_int(env, "SUCCESS_LOW_WATER", 5),
            context_pool_size=max(1, _env_int(env, "CONTEXT_POOL_SIZE", parallel)),
            max_uses_per_context=_env_int(env, "MAX_USES_PER_CONTEXT", 50),
            headless=_env_bool(env, "BROWSER_HEADLESS", True),
            device_names=_env_list(env, "DEVICE_NAMES", DEFAULT_DEVICE_NAMES),
            user_agents=_env_list(env, "USER_AGENTS", DEFAULT_USER_AGENTS, sep="||"),
            wait_time_ms=_env_int(env, "WAIT_TIME", 7000),
            wait_jitter_ms=_env_int(env, "WAIT_JITTER_MS", 800),
            nav_timeout_ms=_env_int(env, "NAV_TIMEOUT", 90000),
            selector_timeout_ms=_env_int(env, "SELECTOR_TIMEOUT", 15000),
            long_pause_every=_env_int(env, "LONG_PAUSE_EVERY", 100),
            retry_attempts=max(0, _env_int(env, "RETRY_ATTEMPTS", 1)),
            retry_backoff_factor=_env_float(env, "RETRY_BACKOFF_FACTOR", 1.0),
            max_fails=_env_int(env, "MAX_FAILS", 3),
            lease_ttl_seconds=_env_int(env, "LEASE_TTL_SECONDS", 900),
            primary_selector=env.get("PRIMARY_SELECTOR") or PRIMARY_SELECTOR,
            secondary_selectors=_env_list(env, "SECONDARY_SELECTORS", DEFAULT_SECONDARY_SELECTORS, sep="||"),
            block_indicators=_env_list(env, "BLOCK_INDICATORS", DEFAULT_BLOCK_INDICATORS),
            status_blocked_label=env.get("STATUS_BLOCKED_LABEL") or "blocked",
            status_no_counter_label=env.get("STATUS_NO_COUNTER_LABEL") or "no_counter",
            status_error_label=env.get("STATUS_ERROR_LABEL") or "error",
            debug=_env_bool(env, "DEBUG", False),
            debug_dir=env.get("DEBUG_DIR") or "./debug_html",
            log_dir=env.get("LOG_DIR") or "logs",
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            export_upload_url=env.get("EXPORT_UPLOAD_URL") or None,
        )
        config.validate()
        return config

    def with_overrides(self, **overrides) -> "WorkerConfig":
        """Copy with the given (non-None) fields replaced, then validate."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self):
        """
        Check value ranges.

        Raises:
            ConfigError: If any setting is out of range
        """
        if self.total_workers <= 0:
            raise ConfigError(f"TOTAL_WORKERS must be positive, got {self.total_workers}")
        if not 0 <= self.worker_index < self.total_workers:
            raise ConfigError(
                f"WORKER_INDEX must be in [0, {self.total_workers}), got {self.worker_index}"
            )
        if self.process_limit is not None and self.process_limit < 0:
            raise ConfigError("PROCESS_LIMIT must not be negative")
        if self.min_parallel > self.max_parallel:
            raise ConfigError(
                f"MIN_PARALLEL ({self.min_parallel}) exceeds MAX_PARALLEL ({self.max_parallel})"
            )
        if self.max_fails < 1:
            raise ConfigError("MAX_FAILS must be at least 1")
        if self.lease_ttl_seconds <= 0:
            raise ConfigError("LEASE_TTL_SECONDS must be positive")
        if self.max_uses_per_context < 1:
            raise ConfigError("MAX_USES_PER_CONTEXT must be at least 1")
        if self.retry_attempts < 0:
            raise ConfigError("RETRY_ATTEMPTS must not be negative")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")

    def summary(self) -> dict:
        """Loggable subset of settings (no credentials)."""
        return {
            "worker": f"{self.worker_index}/{self.total_workers}",
            "worker_id": self.worker_id,
            "parallel": f"{self.parallel} [{self.min_parallel}..{self.max_parallel}]",
            "contexts": self.context_pool_size,
            "wait_time_ms": self.wait_time_ms,
            "retry_attempts": self.retry_attempts,
            "max_fails": self.max_fails,
            "lease_ttl_seconds": self.lease_ttl_seconds,
            "only_missing": self.only_missing,
            "process_limit": self.process_limit,
        }
