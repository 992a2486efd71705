"""Shared fixtures."""

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from tests.fakes import FakeClock, FakeTokenEndpoint, generate_rsa_key


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture(scope="session")
def rsa_key() -> tuple[str, rsa.RSAPublicKey]:
    """One 2048-bit key pair for the whole session (generation is slow)."""
    return generate_rsa_key()
