"""
Top-level test configuration for Machina.
"""

import os

# Ensure test-friendly defaults
os.environ.setdefault("MACHINA_JSON_LOGS", "false")
os.environ.setdefault("MACHINA_LOG_LEVEL", "DEBUG")
os.environ.setdefault("MACHINA_ENCRYPTION_KEY", "00" * 16 + "11" * 16)

import pytest  # noqa: E402

from machina.services.credential_vault import CredentialVault  # noqa: E402
from support import InMemoryRecordStore  # noqa: E402


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(bytes.fromhex("ab" * 32))
