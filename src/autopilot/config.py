"""Configuration loader for the autopilot control plane."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_BREAKERS: Dict[str, Dict[str, int]] = {
    "post_tweet": {"fails": 3, "timeout_sec": 120},
    "token_refresh": {"fails": 5, "timeout_sec": 300},
    "user_lookup": {"fails": 10, "timeout_sec": 60},
}

DEFAULT_RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "tweets/post": {"max_calls": 50, "window_sec": 900},
    "tweets/lookup": {"max_calls": 300, "window_sec": 900},
    "users/lookup": {"max_calls": 300, "window_sec": 900},
    "search/recent": {"max_calls": 180, "window_sec": 900},
}


@dataclass(frozen=True)
class BreakerConfig:
    fails: int
    timeout_sec: int
    monitoring_period_sec: int = 300


@dataclass(frozen=True)
class EndpointQuota:
    max_calls: int
    window_sec: int


@dataclass(frozen=True)
class ScrapeLimits:
    max_attempts_per_hour: int = 3
    max_users_per_hour: int = 10
    cooldown_minutes: int = 15


@dataclass(frozen=True)
class SchedulerConfig:
    interval_sec: int = 60
    base_url: str = "http://localhost:3000"
    cron_secret: Optional[str] = None
    request_timeout_sec: int = 30
    retry_attempts: int = 3
    retry_delay_sec: float = 5.0
    run_immediately: bool = True


@dataclass(frozen=True)
class QueueConfig:
    batch_size: int = 20
    max_retries: int = 3


@dataclass(frozen=True)
class ScrapingConfig:
    enabled: bool = False
    max_users_per_session: int = 3
    stale_after_sec: int = 1800


@dataclass(frozen=True)
class AutopilotConfig:
    circuit_breakers: Dict[str, BreakerConfig]
    rate_limits: Dict[str, EndpointQuota]
    scrape_limits: ScrapeLimits
    scheduler: SchedulerConfig
    queue: QueueConfig
    scraping: ScrapingConfig

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutopilotConfig":
        cb_data = data.get("circuit_breakers") or {}
        monitoring = int(data.get("monitoring_period_sec", 300))
        breakers = {}
        for name, defaults in DEFAULT_BREAKERS.items():
            raw = {**defaults, **(cb_data.get(name) or {})}
            breakers[name] = BreakerConfig(
                fails=int(raw["fails"]),
                timeout_sec=int(raw["timeout_sec"]),
                monitoring_period_sec=int(raw.get("monitoring_period_sec", monitoring)),
            )

        rl_data = data.get("rate_limits") or {}
        rate_limits = {}
        for endpoint in list(DEFAULT_RATE_LIMITS) + [e for e in rl_data if e not in DEFAULT_RATE_LIMITS]:
            raw = {**DEFAULT_RATE_LIMITS.get(endpoint, {}), **(rl_data.get(endpoint) or {})}
            rate_limits[endpoint] = EndpointQuota(
                max_calls=int(raw["max_calls"]),
                window_sec=int(raw["window_sec"]),
            )

        sl = data.get("scrape_limits") or {}
        sched = data.get("scheduler") or {}
        queue = data.get("queue") or {}
        scraping = data.get("scraping") or {}

        return cls(
            circuit_breakers=breakers,
            rate_limits=rate_limits,
            scrape_limits=ScrapeLimits(
                max_attempts_per_hour=int(sl.get("max_attempts_per_hour", 3)),
                max_users_per_hour=int(sl.get("max_users_per_hour", 10)),
                cooldown_minutes=int(sl.get("cooldown_minutes", 15)),
            ),
            scheduler=SchedulerConfig(
                interval_sec=int(sched.get("interval_sec", 60)),
                base_url=str(sched.get("base_url", "http://localhost:3000")).rstrip("/"),
                cron_secret=sched.get("cron_secret") or None,
                request_timeout_sec=int(sched.get("request_timeout_sec", 30)),
                retry_attempts=int(sched.get("retry_attempts", 3)),
                retry_delay_sec=float(sched.get("retry_delay_sec", 5.0)),
                run_immediately=as_bool(sched.get("run_immediately", True)),
            ),
            queue=QueueConfig(
                batch_size=int(queue.get("batch_size", 20)),
                max_retries=int(queue.get("max_retries", 3)),
            ),
            scraping=ScrapingConfig(
                enabled=as_bool(scraping.get("enabled", False)),
                max_users_per_session=int(scraping.get("max_users_per_session", 3)),
                stale_after_sec=int(scraping.get("stale_after_sec", 1800)),
            ),
        )


ENV_MAP = {
    "monitoring_period_sec": "CB_MONITORING_PERIOD_SEC",
    "circuit_breakers.post_tweet.fails": "CB_POST_TWEET_FAILS",
    "circuit_breakers.post_tweet.timeout_sec": "CB_POST_TWEET_TIMEOUT_SEC",
    "circuit_breakers.token_refresh.fails": "CB_TOKEN_REFRESH_FAILS",
    "circuit_breakers.token_refresh.timeout_sec": "CB_TOKEN_REFRESH_TIMEOUT_SEC",
    "circuit_breakers.user_lookup.fails": "CB_USER_LOOKUP_FAILS",
    "circuit_breakers.user_lookup.timeout_sec": "CB_USER_LOOKUP_TIMEOUT_SEC",
    "scrape_limits.max_attempts_per_hour": "SCRAPE_MAX_ATTEMPTS_PER_HOUR",
    "scrape_limits.max_users_per_hour": "SCRAPE_MAX_USERS_PER_HOUR",
    "scrape_limits.cooldown_minutes": "SCRAPE_COOLDOWN_MINUTES",
    "scheduler.interval_sec": "SCHEDULER_INTERVAL_SEC",
    "scheduler.base_url": "APP_URL",
    "scheduler.cron_secret": "CRON_SECRET",
    "scheduler.retry_attempts": "SCHEDULER_RETRY_ATTEMPTS",
    "scheduler.run_immediately": "SCHEDULER_RUN_IMMEDIATELY",
    "queue.batch_size": "QUEUE_BATCH_SIZE",
    "queue.max_retries": "QUEUE_MAX_RETRIES",
    "scraping.enabled": "ENABLE_SCRAPING_FALLBACK",
    "scraping.max_users_per_session": "MAX_SCRAPING_USERS_PER_SESSION",
    "scraping.stale_after_sec": "SCRAPING_STALE_AFTER_SEC",
}

INT_KEYS = {
    "fails",
    "timeout_sec",
    "monitoring_period_sec",
    "max_attempts_per_hour",
    "max_users_per_hour",
    "cooldown_minutes",
    "interval_sec",
    "retry_attempts",
    "batch_size",
    "max_retries",
    "max_users_per_session",
    "stale_after_sec",
}
BOOL_KEYS = {"enabled", "run_immediately"}


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        last = parts[-1]
        if last in INT_KEYS:
            value = int(value)
        elif last in BOOL_KEYS:
            value = as_bool(value)
        target[last] = value

    return merged


def load_config(config_path: str | Path = "config/autopilot.defaults.yml") -> AutopilotConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data = merge_env_overrides(data)
    return AutopilotConfig.from_dict(data)
