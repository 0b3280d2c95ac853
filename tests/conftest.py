"""
Pytest configuration for the test suite.

Adds the project root to sys.path so that imports like
``from formfields.extraction import ...`` and ``from textract_fixtures import ...``
work without per-file sys.path hacks.
"""

import sys
from pathlib import Path

import pytest

# Add project root so ``from formfields.*`` imports work
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

# Add tests/ directory so ``from textract_fixtures import ...`` works
_tests_dir = str(Path(__file__).resolve().parent)
if _tests_dir not in sys.path:
    sys.path.insert(0, _tests_dir)

from textract_fixtures import BlockBuilder  # noqa: E402


@pytest.fixture
def builder():
    return BlockBuilder()
