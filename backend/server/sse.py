"""
Server-Sent Events (SSE) infrastructure.

Provides SSEEvent formatting, SSEChannel (async queue wrapper) and
``watch_chart``, which streams a chart's reactive cells into a channel.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import BaseModel

from core.utils import json_dumps_safe


class SSEEvent(BaseModel):
    """A single SSE message."""
    event: str
    data: Any = None
    id: Optional[str] = None

    def format(self) -> str:
        """Serialize to SSE wire format."""
        lines: list[str] = []
        if self.id:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.event}")

        if self.data is not None:
            if isinstance(self.data, str):
                payload = self.data
            else:
                payload = json_dumps_safe(self.data)
            for line in payload.split("\n"):
                lines.append(f"data: {line}")
        else:
            lines.append("data: {}")

        return "\n".join(lines) + "\n\n"


class SSEChannel:
    """
    Async queue wrapper for streaming SSE events.

    Usage:
        channel = SSEChannel()

        # Producer (in background task):
        await channel.emit(EVT_OUTPUTS, {"id": "abc", ...})
        await channel.close()

        # Consumer (in SSE endpoint):
        async for event_str in channel:
            yield event_str
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[SSEEvent]] = asyncio.Queue()
        self._closed = False

    async def emit(self, event: str, data: Any = None, event_id: Optional[str] = None) -> None:
        """Put an event onto the channel."""
        self.emit_nowait(event, data, event_id)

    def emit_nowait(self, event: str, data: Any = None, event_id: Optional[str] = None) -> None:
        """Put an event onto the channel from synchronous code (cell subscribers)."""
        if self._closed:
            return
        sse = SSEEvent(
            event=event,
            data=data,
            id=event_id or str(uuid.uuid4())[:8],
        )
        self._queue.put_nowait(sse)

    async def close(self) -> None:
        """Signal the consumer that no more events will arrive."""
        self._closed = True
        await self._queue.put(None)  # sentinel

    async def __aiter__(self) -> AsyncIterator[str]:
        """Yield formatted SSE strings until the channel is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event.format()


# ---------------------------------------------------------------------------
# Standard event types (constants for consistency)
# ---------------------------------------------------------------------------

EVT_OUTPUTS = "outputs"
EVT_STATE = "state"
EVT_ERROR = "error"
EVT_CLOSED = "closed"


def watch_chart(workspace, chart_id: str, channel: SSEChannel) -> Callable[[], None]:
    """Forward a chart's outputs, state and errors to ``channel``.

    Each cell's current value is sent immediately. Returns a callable that
    stops forwarding.
    """
    runtime = workspace.get_chart(chart_id)

    def on_outputs(_) -> None:
        payload = workspace.chart_payload(chart_id)
        channel.emit_nowait(EVT_OUTPUTS, {"id": chart_id, "spec": payload["spec"], "outputs": payload["outputs"]})

    def on_state(state) -> None:
        channel.emit_nowait(EVT_STATE, {"id": chart_id, "state": state})

    def on_error(error) -> None:
        if error is not None:
            channel.emit_nowait(EVT_ERROR, {"id": chart_id, "message": str(error)})

    unsubscribers = [
        runtime.outputs.subscribe(on_outputs),
        runtime.state.subscribe(on_state),
        runtime.error.subscribe(on_error),
    ]

    def stop() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()

    return stop
