from __future__ import annotations

import pytest

from jobqueue.config import get_settings
from tests._helpers.jobs import reset_job_state


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("jq_test")
    (root / "queue").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("QUEUE_DRIVER", "memory")
    monkeypatch.setenv("QUEUE_STORAGE_PATH", str(root / "queue"))
    monkeypatch.setenv("DLQ_DRIVER", "memory")
    monkeypatch.setenv("QUEUE_RETRY_DELAY_S", "0")
    monkeypatch.setenv("WORKER_DELAY_S", "0")
    monkeypatch.delenv("DLQ_STORAGE_PATH", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("REDIS_PASSWORD", raising=False)
    monkeypatch.delenv("LOG_DIR", raising=False)
    get_settings.cache_clear()
    reset_job_state()
