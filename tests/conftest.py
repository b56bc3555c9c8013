import pytest

from envelope import KeyDistributionCoordinator
from keywrap import generate_keypair
from vault import MemoryVault

NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(scope="session")
def keypairs():
    """Five recipient key pairs, (private_hex, public_hex), reused across tests."""
    return [generate_keypair() for _ in range(5)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identities():
    return ["0xAaA1", "0xbbb2", "0xCcC3", "0xddd4", "0xEEE5"]


@pytest.fixture
def vault(keypairs, identities):
    v = MemoryVault()
    for identity, (_, public_key) in zip(identities, keypairs):
        v.register_public_key(identity, public_key)
    return v


@pytest.fixture
def coordinator(vault, clock):
    return KeyDistributionCoordinator(key_resolver=vault, store=vault, blobs=vault, clock=clock)
