from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)


def _validate(s: Settings) -> None:
    """
    Reject values the queue cannot run with; warn about ones it degrades on.
    """
    bad: list[str] = []
    if int(s.public.queue_batch) < 1:
        bad.append("QUEUE_BATCH")
    if int(s.public.queue_log_persist_ms) < 0:
        bad.append("QUEUE_LOG_PERSIST_MS")
    if float(s.public.redis_health_interval_s) <= 0:
        bad.append("REDIS_HEALTH_INTERVAL_S")
    if bad:
        raise ConfigError("Invalid queue configuration: " + ", ".join(sorted(bad)))

    # A named store without a URL is not fatal: the queue runs in-memory.
    store = str(s.public.queue_store or "").strip()
    if store and not str(s.secret.redis_url or "").strip():
        logging.getLogger("durable_queue").warning(
            "queue_store_without_redis_url",
            extra={"store": store},
        )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        # stringify Paths for stable JSON output
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate(s)
    return s


class _SettingsProxy:
    """
    Lazy proxy so tests can set env vars before first access.
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)

    def reload(self) -> None:
        get_settings.cache_clear()

    def snapshot(self) -> Settings:
        return get_settings()


# Single access point
SETTINGS = _SettingsProxy()
