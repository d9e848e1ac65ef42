from __future__ import annotations

import pytest

from durable_queue.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("dq_test")
    (root / "config").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("QUEUE_LOG_FILE", "config/.queue")
    monkeypatch.setenv("QUEUE_LOG_PERSIST_MS", "500")
    monkeypatch.delenv("QUEUE_STORE", raising=False)
    monkeypatch.delenv("QUEUE_CHANNEL", raising=False)
    monkeypatch.delenv("QUEUE_BATCH", raising=False)
    monkeypatch.delenv("LOG_DIR", raising=False)
    # Redis-backed tests read REDIS_URL through tests/_helpers/redis.py instead.
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
