"""Shared fixtures for relaydm tests."""

import pytest

from relaydm.config import SyncConfig
from relaydm.relay import InMemoryRelay
from relaydm.signer import LocalSigner

from .test_vectors import ALICE_SEED_HEX, BOB_SEED_HEX, CAROL_SEED_HEX


@pytest.fixture
def alice() -> LocalSigner:
    """Alice's signer (the local user in most tests)."""
    return LocalSigner.from_seed(bytes.fromhex(ALICE_SEED_HEX))


@pytest.fixture
def bob() -> LocalSigner:
    """Bob's signer."""
    return LocalSigner.from_seed(bytes.fromhex(BOB_SEED_HEX))


@pytest.fixture
def carol() -> LocalSigner:
    """Carol's signer."""
    return LocalSigner.from_seed(bytes.fromhex(CAROL_SEED_HEX))


@pytest.fixture
def relay() -> InMemoryRelay:
    return InMemoryRelay()


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig()
