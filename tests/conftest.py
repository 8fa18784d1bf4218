# tests/conftest.py
# The project is a flat set of modules; put the root on sys.path for `import quotes` etc.
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from config import Settings  # noqa: E402
from fakes import InMemoryStore  # noqa: E402


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def settings():
    return Settings(
        SHIPPING_FLAT_CENTS=299,
        FREE_SHIPPING_THRESHOLD_CENTS=None,
        ADMIN_API_KEY="test-admin-key",
        _env_file=None,
    )
