from __future__ import annotations

import os

import pytest

os.environ["BQ_STORAGE_BACKEND"] = "memory"
os.environ["BQ_SYNC_ENABLED"] = "false"
os.environ["BQ_OTEL_ENABLED"] = "false"

from busqueda.core.config import get_settings  # noqa: E402
from busqueda.services.repository import get_repository  # noqa: E402


@pytest.fixture(autouse=True)
def reset_cached_singletons() -> None:
    get_settings.cache_clear()
    get_repository.cache_clear()
    yield
    get_repository.cache_clear()
    get_settings.cache_clear()
