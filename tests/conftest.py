import logging

import pytest

from readorm import connect, default_registry, morph_map
from readorm.connection import _connections

from tests.helpers import RecordingRunner, create_database


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def clean_state():
    """Every test starts with no connection, no morph aliases and an empty load registry."""
    _connections.clear()
    morph_map.clear()
    default_registry.clear()
    yield
    _connections.clear()
    morph_map.clear()
    default_registry.clear()


@pytest.fixture
def database():
    connection = create_database()
    yield connection
    connection.close()


@pytest.fixture
def runner(database) -> RecordingRunner:
    """Recording runner over the seeded database, registered as the default connection."""
    runner = RecordingRunner(database)
    connect(runner)
    return runner


@pytest.fixture
def readorm_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="readorm")
    return caplog
