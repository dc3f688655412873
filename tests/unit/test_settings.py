from __future__ import annotations

import logging

import pytest

from app.logging import configure_logging
from app.settings import DEFAULT_SUBFOLDERS, Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LEASE_SECONDS", raising=False)
    settings = Settings(_env_file=None)

    assert settings.lease_seconds == 600
    assert settings.heartbeat_interval == pytest.approx(200)
    assert settings.max_stalled_retries == 3
    assert settings.output_subfolders == DEFAULT_SUBFOLDERS
    assert settings.progress_channel == "reelsmith:progress"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("LEASE_SECONDS", "90")
    monkeypatch.setenv("HEARTBEAT_SECONDS", "5")
    monkeypatch.setenv("REDIS_PREFIX", "staging")
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path))

    settings = Settings(_env_file=None)

    assert settings.lease_seconds == 90
    assert settings.heartbeat_interval == 5
    assert settings.progress_channel == "staging:progress"
    assert settings.output_dir == tmp_path


def test_configure_logging_does_not_stack_handlers(tmp_path) -> None:
    settings = Settings(_env_file=None, log_dir=tmp_path / "logs", service_name="svc")
    root = logging.getLogger()

    configure_logging(settings)
    configure_logging(settings)

    ours = [h for h in root.handlers if getattr(h, "_reelsmith_handler", False)]
    assert len(ours) == 2
    assert (tmp_path / "logs" / "svc.log").exists()
    for handler in ours:
        root.removeHandler(handler)
        handler.close()
