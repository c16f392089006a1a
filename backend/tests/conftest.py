import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
TESTS_ROOT = Path(__file__).resolve().parent
for path in (str(BACKEND_ROOT), str(TESTS_ROOT)):
    if path not in sys.path:
        sys.path.insert(0, path)

from fakes import FakeFirestore, FakeGenaiClient  # noqa: E402


@pytest.fixture
def fake_db():
    return FakeFirestore()


@pytest.fixture
def fake_genai():
    from chatwith_backend.ai import gemini

    client = FakeGenaiClient()
    gemini._client_cache["test-key"] = client
    try:
        yield client
    finally:
        gemini._client_cache.pop("test-key", None)
