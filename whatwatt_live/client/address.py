"""
Address resolution for devices whose IP may change (DHCP lease renewal, router
swap). The stream manager asks a resolver for the current location of the
device right before each reconnect attempt, never on the first connect.
"""
import inspect
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Protocol, Union

from loguru import logger

from whatwatt_live.shared.config import settings
from whatwatt_live.shared.models import AddressResolution

DiscoveryResults = Union[Mapping[str, Mapping[str, Any]], Iterable[Mapping[str, Any]]]


class AddressResolver(Protocol):
    async def resolve(self, device_id: str) -> AddressResolution:
        ...


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class DiscoveryResultsResolver:
    """
    Resolves a device against a table of discovery results, e.g. the records an
    mDNS browser collected. Each record is a mapping with `id`, `address` and
    optionally `port`.

    The resolver remembers the last known address. When discovery reports a
    different one it is adopted, handed to `persist` (if given) and reported
    with `ip_updated=True`.
    """

    def __init__(
        self,
        discover: Callable[[], Union[DiscoveryResults, Awaitable[DiscoveryResults]]],
        host: str,
        port: Optional[int] = None,
        persist: Optional[Callable[[str, int], Any]] = None,
    ):
        self._discover = discover
        self._persist = persist
        self.host = host
        self.port = port or settings.DEFAULT_PORT

    async def resolve(self, device_id: str) -> AddressResolution:
        logger.debug(f"device_id={device_id} event=resolve_address")
        try:
            results = await _maybe_await(self._discover())
            records = results.values() if isinstance(results, Mapping) else results
            match = next((r for r in records if r.get("id") == device_id), None)

            if match is None:
                logger.info(f"device_id={device_id} event=resolve_address reason=not_found host={self.host}")
                return AddressResolution(
                    success=True, connection_host=self.host, connection_port=self.port, found=False
                )

            new_host = match["address"]
            new_port = match.get("port") or settings.DEFAULT_PORT
            if new_host == self.host and new_port == self.port:
                return AddressResolution(
                    success=True, connection_host=self.host, connection_port=self.port, found=True
                )

            logger.info(
                f"device_id={device_id} event=address_changed "
                f"old={self.host}:{self.port} new={new_host}:{new_port}"
            )
            if self._persist is not None:
                await _maybe_await(self._persist(new_host, new_port))
            self.host, self.port = new_host, new_port
            return AddressResolution(
                success=True, ip_updated=True, connection_host=new_host, connection_port=new_port, found=True
            )
        except Exception as e:
            logger.error(f"device_id={device_id} event=resolve_address reason='{e}'")
            return AddressResolution(
                success=False, error=str(e), connection_host=self.host, connection_port=self.port
            )
