"""
MODULE OVERVIEW:
The Rich terminal dashboard for a live whatwatt stream.

WHAT IS HAPPENING HERE:
The dashboard plugs itself into the manager's callbacks, keeps the last few
readings and state changes in small deques and redraws a Layout four times a
second while the stream runs.
"""

from collections import deque
from datetime import datetime
import asyncio

from rich.live import Live
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table

from whatwatt_live.client.event_stream import EventStreamManager
from whatwatt_live.shared.models import ConnectionState

# Readings shown in the feed table, in order
FEED_FIELDS = ("P_In", "P_Out", "E_In", "E_Out")

STATE_COLORS = {
    ConnectionState.CONNECTED: "green",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.RECONNECT_SCHEDULED: "yellow",
}


def _clock() -> str:
    return datetime.now().strftime("%H:%M:%S")


class Visualizer:
    def __init__(self, manager: EventStreamManager):
        self.manager = manager
        self.recent_readings = deque(maxlen=10)
        self.status = "INITIALIZING"
        self.timeline = deque(maxlen=5)

    def on_status_change(self, status: str):
        self.status = status
        self.timeline.appendleft(f"[{_clock()}] State: {status}")

    def on_data(self, payload):
        if isinstance(payload, dict):
            values = [str(payload.get(name, "-")) for name in FEED_FIELDS]
        else:
            values = ["-"] * len(FEED_FIELDS)
        self.recent_readings.appendleft((_clock(), *values))

    def on_error(self, error):
        self.on_status_change(f"ERROR {error}")

    def _header(self) -> Panel:
        state = self.manager.state
        color = STATE_COLORS.get(state, "red")
        return Panel(
            f"[{color} bold]{self.manager.config.host} | State: {state.value} | {self.status}[/]", style=color
        )

    def _readings(self) -> Panel:
        table = Table(title="Live Readings", expand=True)
        table.add_column("Time", style="cyan", no_wrap=True)
        for name in FEED_FIELDS:
            table.add_column(name, justify="right", style="green")
        for row in self.recent_readings:
            table.add_row(*row)
        return Panel(table, title="Feed")

    def _counters(self) -> Panel:
        status = self.manager.get_status()
        lines = [
            f"Events Received: {self.manager.events_received}",
            f"Frames Dropped: {self.manager.frames_dropped}",
            f"Reconnects: {self.manager.reconnect_count}",
            f"Attempts Since Connect: {status.reconnect_attempts}",
            f"URL: {status.url or '-'}",
        ]
        return Panel("\n".join(lines), title="Connection Stats")

    def generate_layout(self) -> Layout:
        body = Layout(name="body")
        side = Layout(name="side", ratio=1)
        body.split_row(Layout(self._readings(), name="readings", ratio=2), side)
        side.split_column(
            Layout(self._counters(), name="counters"),
            Layout(Panel("\n".join(self.timeline), title="Timeline"), name="events"),
        )

        layout = Layout()
        layout.split_column(Layout(self._header(), name="header", size=3), body)
        return layout

    async def run(self, duration_s: float):
        self.manager.set_callbacks(
            on_data=self.on_data,
            on_connect=lambda: self.on_status_change("CONNECTED"),
            on_error=self.on_error,
            on_disconnect=lambda: self.on_status_change("DISCONNECTED"),
            on_give_up=lambda error: self.on_status_change("GAVE UP"),
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration_s
        await self.manager.start()
        try:
            with Live(self.generate_layout(), refresh_per_second=4) as live:
                while loop.time() < deadline:
                    await asyncio.sleep(0.25)
                    live.update(self.generate_layout())
        finally:
            await self.manager.stop()
