"""Shared fixtures."""

import pytest
import pytest_asyncio

from helpers import RecordingSleep
from swap_oracle.config import Config
from swap_oracle.redemption import RedeemerKey
from swap_oracle.retry import RetryPolicy
from swap_oracle.secret_store import DatabaseSecretStore
from swap_oracle.secret_vault import SecretVault

REDEEMER_SECRET = bytes.fromhex("11" * 32)


@pytest.fixture
def settings(tmp_path):
    """Regtest settings with fast timings and a throwaway database."""
    return Config(
        _env_file=None,
        bitcoin_network="regtest",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'secrets.db'}",
        poll_interval=0.01,
        push_connect_timeout=0.2,
        push_reconnect_base_delay=0.001,
        push_max_reconnect_attempts=3,
        order_not_found_grace=300,
        funding_poll_interval=0.01,
        retry_base_delay=1.0,
        retry_max_delay=5.0,
        max_retries=3,
        redeem_fee_sats=1000,
        enable_health_server=False,
        enable_apprise=False,
    )


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def store(settings):
    """SQLite-backed secret store in a temp directory."""
    store = DatabaseSecretStore(settings.database_url)
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def vault(store, settings, no_sleep):
    return SecretVault(store, settings, retry_policy=RetryPolicy.from_config(settings), sleep=no_sleep)


@pytest.fixture
def redeemer_key():
    return RedeemerKey(REDEEMER_SECRET)


@pytest.fixture
def redeemer_pubkey(redeemer_key):
    return redeemer_key.public_key
