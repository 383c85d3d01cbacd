import pytest

from liquidation_monitor.config import get_settings


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the cached Settings between tests so env overrides don't leak."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
