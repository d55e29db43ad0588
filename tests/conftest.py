"""
Shared fixtures
"""

import os
import tempfile

import pytest

from keygate.config.database import DatabaseConfig
from keygate.services.key_storage import KeyStorageService
from keygate.services.payload_storage import PayloadStorageService
from keygate.utils.encryption import EncryptionManager


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_db_path():
    """Create temporary database file for testing"""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def db_config(temp_db_path):
    return DatabaseConfig(environment="development", database_url="", sqlite_path=temp_db_path, timeout=5)


@pytest.fixture
def encryption_manager():
    return EncryptionManager("test_master_key")


@pytest.fixture
def key_storage(db_config):
    return KeyStorageService(db_config)


@pytest.fixture
def payload_storage(db_config, encryption_manager):
    return PayloadStorageService(db_config, encryption_manager)


@pytest.fixture
def clock():
    return FakeClock()
