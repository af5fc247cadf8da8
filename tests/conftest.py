"""Shared test fixtures for health tracker tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("BIOMARKER_RANGES_PATH", "")
    monkeypatch.setenv("DB_PATH", ":memory:")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def health_db():
    """Create an in-memory HealthDatabase for testing."""
    from healthtrack.core.storage.database import HealthDatabase

    db = HealthDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from healthtrack.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def repository(health_db, field_encryptor):
    """Create a TrackerRepository backed by in-memory SQLite."""
    from healthtrack.core.storage.repository import TrackerRepository

    return TrackerRepository(health_db, field_encryptor)


@pytest.fixture
def audit_logger(health_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from healthtrack.core.audit.logger import AuditLogger

    return AuditLogger(health_db)


@pytest.fixture
def reference_ranges():
    """The packaged biomarker reference ranges."""
    from healthtrack.domains.tracker.domain_logic.reference_data import load_reference_ranges

    return load_reference_ranges()


@pytest.fixture
def engine(repository, reference_ranges):
    """A HealthEngine over the in-memory store with reference ranges synced."""
    from healthtrack.domains.tracker.domain_logic.engine import HealthEngine

    health_engine = HealthEngine(repository, reference_ranges)
    health_engine.sync_reference_ranges()
    return health_engine
