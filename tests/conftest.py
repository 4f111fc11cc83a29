import pytest

from broker_gateway.config import ConfigService, reset_config_service


class RaisingConfig:
    """Config provider that fails the test if anything reads from it."""

    def __init__(self):
        self.reads = []

    def get(self, key, default=None):
        self.reads.append(key)
        raise AssertionError(f"config was queried for {key!r}")


@pytest.fixture
def raising_config():
    return RaisingConfig()


@pytest.fixture
def make_config():
    def _make(**sections):
        return ConfigService.from_mapping(sections)
    return _make


@pytest.fixture(autouse=True)
def _fresh_config_service():
    reset_config_service()
    yield
    reset_config_service()
