import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from whatwatt_live.shared.client_utils import make_client_stats

Callback = Callable[..., Union[None, Awaitable[None]]]
LogSink = Callable[[str], Any]

CALLBACK_NAMES = ("on_data", "on_connect", "on_error", "on_disconnect", "on_give_up")


class BaseConnectionClient:
    """Consumer callbacks, the log sink and the counters every stream client carries."""

    protocol_name: str = "unknown"

    def __init__(
        self,
        on_data: Optional[Callback] = None,
        on_connect: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        on_disconnect: Optional[Callback] = None,
        on_give_up: Optional[Callback] = None,
        logger: Optional[LogSink] = None,
    ):
        self.on_data = on_data
        self.on_connect = on_connect
        self.on_error = on_error
        self.on_disconnect = on_disconnect
        self.on_give_up = on_give_up
        self.logger = logger

        self.stats = make_client_stats()

    @property
    def events_received(self): return self.stats["events_received"]

    @property
    def reconnect_count(self): return self.stats["reconnect_count"]

    @property
    def frames_dropped(self): return self.stats["frames_dropped"]

    def set_callbacks(self, **callbacks: Optional[Callback]) -> None:
        for name, callback in callbacks.items():
            if name not in CALLBACK_NAMES:
                raise TypeError(f"Unknown callback {name!r}")
            setattr(self, name, callback)

    def _log(self, message: str) -> None:
        if self.logger is not None:
            self.logger(message)
        else:
            logger.bind(component=self.protocol_name).info(message)

    async def _invoke(self, name: str, *args: Any) -> None:
        """Run a consumer callback, sync or async. Its failures never reach our state machine."""
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"protocol={self.protocol_name} event=callback_error callback={name}")
