"""
Shared pytest fixtures for the ledger parser tests.
"""

from pathlib import Path

import pytest


DATA_DIR = Path(__file__).resolve().parent / "data"


@pytest.fixture
def sample_ledger_path() -> Path:
    """Sample ledger mixing valid, unsupported and malformed statements."""
    return DATA_DIR / "test_ledger.beancount"


@pytest.fixture
def sample_ledger_text(sample_ledger_path: Path) -> str:
    return sample_ledger_path.read_text(encoding="utf-8")
