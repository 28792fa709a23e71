"""Tests for DiscoveryResultsResolver."""

import pytest

from whatwatt_live.client.address import DiscoveryResultsResolver

RECORDS = [
    {"id": "A1B2C3", "address": "192.168.1.60", "port": 80},
    {"id": "FFEE00", "address": "192.168.1.77"},
]


class TestDiscoveryResultsResolver:
    """Tests for the discovery-table address resolver."""

    @pytest.mark.asyncio
    async def test_changed_address_is_adopted_and_persisted(self):
        persisted = []
        resolver = DiscoveryResultsResolver(
            lambda: RECORDS, host="192.168.1.50", persist=lambda host, port: persisted.append((host, port))
        )

        result = await resolver.resolve("A1B2C3")

        assert result.success and result.found and result.ip_updated
        assert (result.connection_host, result.connection_port) == ("192.168.1.60", 80)
        assert persisted == [("192.168.1.60", 80)]
        assert resolver.host == "192.168.1.60"

    @pytest.mark.asyncio
    async def test_unchanged_address(self):
        resolver = DiscoveryResultsResolver(lambda: RECORDS, host="192.168.1.77")

        result = await resolver.resolve("FFEE00")

        assert result.success and result.found
        assert not result.ip_updated
        assert result.connection_host == "192.168.1.77"

    @pytest.mark.asyncio
    async def test_device_not_found_keeps_address(self):
        resolver = DiscoveryResultsResolver(lambda: RECORDS, host="10.0.0.5", port=8080)

        result = await resolver.resolve("000000")

        assert result.success
        assert not result.found and not result.ip_updated
        assert (result.connection_host, result.connection_port) == ("10.0.0.5", 8080)

    @pytest.mark.asyncio
    async def test_async_discovery_keyed_by_id(self):
        async def discover():
            return {"A1B2C3": {"id": "A1B2C3", "address": "meter.lan", "port": 8080}}

        async def persist(host, port):
            persisted.append((host, port))

        persisted = []
        resolver = DiscoveryResultsResolver(discover, host="192.168.1.50", persist=persist)

        result = await resolver.resolve("A1B2C3")

        assert result.ip_updated
        assert persisted == [("meter.lan", 8080)]

    @pytest.mark.asyncio
    async def test_discovery_failure_is_reported_not_raised(self):
        def discover():
            raise OSError("mDNS socket closed")

        resolver = DiscoveryResultsResolver(discover, host="192.168.1.50")

        result = await resolver.resolve("A1B2C3")

        assert not result.success
        assert result.error == "mDNS socket closed"
        assert result.connection_host == "192.168.1.50"
