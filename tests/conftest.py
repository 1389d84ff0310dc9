import sys
import os

import pytest

# Add project root to sys.path so tests can import top-level modules like 'storage', 'ingest', 'normalize', etc.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from pagination.cursor import configure_cursor_secret  # noqa: E402
from storage.db import Database  # noqa: E402
from storage.retry import reset_retry_config  # noqa: E402

TEST_CURSOR_SECRET = "test-cursor-secret"


@pytest.fixture(autouse=True)
def _isolated_config():
    configure_cursor_secret(TEST_CURSOR_SECRET)
    reset_retry_config()
    yield
    configure_cursor_secret(None)
    reset_retry_config()


@pytest.fixture
def db():
    database = Database(':memory:')
    yield database
    database.close()
