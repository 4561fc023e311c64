"""Test configuration: import paths, a private resource store per test, and a
clean reader library between server tests.
"""

import os
import sys

import pytest

# Make the top-level modules and the EPUB factory importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from resources import ResourceStore  # noqa: E402
from epub_factory import sample_epub  # noqa: E402


@pytest.fixture
def store():
    """A resource store that no other test shares."""
    return ResourceStore()


@pytest.fixture
def sample_epub_bytes():
    return sample_epub()


@pytest.fixture(autouse=True)
def close_open_books():
    """Close whatever the server tests opened so handles do not pile up."""
    yield
    import server
    server.library.close_all()
