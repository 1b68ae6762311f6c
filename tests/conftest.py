"""
pytest configuration for resumable_fetch tests.

Adds src directory to Python path for imports and resets logging context.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _isolate_log_context():
    """Keep log context set by one test from leaking into the next."""
    from resumable_fetch.logging.context import clear_log_context

    clear_log_context()
    yield
    clear_log_context()

