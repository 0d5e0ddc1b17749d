"""Pytest configuration for modelferry tests."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def _disable_ansi_colors() -> None:
    """Disable ANSI colors in CLI output for consistent test assertions."""
    os.environ["TERM"] = "dumb"


@pytest.fixture(autouse=True)
def _clear_modelferry_environment(monkeypatch) -> None:
    for key in (
        "MODELFERRY_HOME",
        "MODELFERRY_HOST",
        "MODELFERRY_PORT",
        "MODELFERRY_LOG_LEVEL",
        "MODELFERRY_RUNTIME",
        "MODELFERRY_BASE_MODEL_URL",
    ):
        monkeypatch.delenv(key, raising=False)
