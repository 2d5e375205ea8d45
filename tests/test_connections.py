"""Tests for connecting and disconnecting an account's calendar."""

from __future__ import annotations

import pytest

from slotkeeper.cache import AvailabilityCache
from slotkeeper.config import SlotkeeperConfig
from slotkeeper.connections import disconnect_connection, register_connection
from slotkeeper.crypto import CredentialCipher
from slotkeeper.engine import build_engine
from slotkeeper.scheduling.intervals import Interval
from slotkeeper.storage.memory import InMemoryConnectionStore

from conftest import MONDAY, FakeCalendarProvider, at

pytestmark = pytest.mark.unit


def _warm(cache: AvailabilityCache, account_id: str = "acct-1") -> None:
    cache.set(account_id, MONDAY, [Interval(at(9), at(10))])
    assert cache.contains(account_id, MONDAY)


class TestRegisterConnection:
    async def test_stores_encrypted_primary_and_drops_cache(
        self, cipher: CredentialCipher, cache: AvailabilityCache
    ) -> None:
        store = InMemoryConnectionStore()
        _warm(cache)
        _warm(cache, "acct-2")

        connection = await register_connection(
            store,
            cipher,
            account_id="acct-1",
            access_token="consent-access",
            refresh_token="consent-refresh",
            email="owner@example.com",
            cache=cache,
        )

        assert connection.is_primary
        assert connection.email == "owner@example.com"
        assert "consent-access" not in repr(connection)
        assert cipher.decrypt(connection.refresh_token) == "consent-refresh"
        assert await store.get_primary("acct-1") == connection
        assert not cache.contains("acct-1", MONDAY)
        assert cache.contains("acct-2", MONDAY)

    async def test_replaces_previous_primary(self, cipher: CredentialCipher) -> None:
        store = InMemoryConnectionStore()
        first = await register_connection(
            store, cipher, account_id="acct-1", access_token="a1", refresh_token="r1"
        )

        second = await register_connection(
            store, cipher, account_id="acct-1", access_token="a2", refresh_token="r2"
        )

        assert list(store.connections) == [second.id]
        assert first.id not in store.connections
        primary = await store.get_primary("acct-1")
        assert primary is not None
        assert cipher.decrypt(primary.access_token) == "a2"


class TestDisconnectConnection:
    async def test_removes_connection_and_drops_cache(
        self, cipher: CredentialCipher, cache: AvailabilityCache
    ) -> None:
        store = InMemoryConnectionStore()
        await register_connection(
            store, cipher, account_id="acct-1", access_token="a", refresh_token="r"
        )
        _warm(cache)

        assert await disconnect_connection(store, account_id="acct-1", cache=cache) is True
        assert await store.get_primary("acct-1") is None
        assert not cache.contains("acct-1", MONDAY)

    async def test_nothing_to_remove(self, cache: AvailabilityCache) -> None:
        store = InMemoryConnectionStore()
        _warm(cache)

        assert await disconnect_connection(store, account_id="acct-1", cache=cache) is False
        assert not cache.contains("acct-1", MONDAY)


class TestEngineCalendarConnection:
    async def test_connect_then_disconnect(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        engine = await build_engine(SlotkeeperConfig(), cipher=cipher, provider=provider)
        _warm(engine.cache)

        connection = await engine.connect_calendar(
            "acct-1", access_token="a", refresh_token="r", email="owner@example.com"
        )

        assert connection.provider == provider.name
        assert await engine.calendar.is_connected("acct-1")
        assert not engine.cache.contains("acct-1", MONDAY)

        _warm(engine.cache)
        assert await engine.disconnect_calendar("acct-1") is True
        assert not await engine.calendar.is_connected("acct-1")
        assert not engine.cache.contains("acct-1", MONDAY)
        assert await engine.disconnect_calendar("acct-1") is False
        await engine.close()
