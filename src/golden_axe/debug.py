"""Best-effort forwarding of unexpected failures to an operator chat.

`DebugReporter.report()` is synchronous and never blocks: it enqueues onto a
bounded in-memory stream drained by `DebugReporter.run()`. Delivery is
retried once; after that the message is logged and dropped. Without a
configured debug chat every event is only logged.
"""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import Protocol

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

logger = getLogger(__name__)


class MessageSender(Protocol):
    async def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> dict: ...


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    context: str
    cause: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def render(self) -> str:
        return (
            f"<b>Error</b> at {self.timestamp.isoformat(timespec='seconds')}\n"
            f"<code>{html.escape(self.context)}</code>\n"
            f"{html.escape(self.cause)}"
        )


class DebugReporter:
    def __init__(
        self,
        client: MessageSender | None,
        chat_id: int | None,
        *,
        buffer_size: int = 64,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self.client = client
        self.chat_id = chat_id
        self.retry_delay_seconds = retry_delay_seconds
        self._send: MemoryObjectSendStream[str]
        self._receive: MemoryObjectReceiveStream[str]
        self._send, self._receive = anyio.create_memory_object_stream[str](buffer_size)
        if client is None or chat_id is None:
            logger.warning("`debug_chat` not present, debug messages will be printed to log")

    @property
    def enabled(self) -> bool:
        return self.client is not None and self.chat_id is not None

    def report(self, event: ErrorEvent) -> None:
        logger.warning(f"{event.context}: {event.cause}")
        self.notify(event.render())

    def notify(self, text: str) -> None:
        """Queue a raw HTML message for the debug chat."""

        if not self.enabled:
            logger.info(text)
            return
        try:
            self._send.send_nowait(text)
        except anyio.WouldBlock:
            logger.warning(f"Debug queue full, dropping: {text}")
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.warning(f"Debug reporter closed, dropping: {text}")

    async def run(self) -> None:
        """Deliver queued messages until `aclose()` is called and the queue drains."""

        async with self._receive:
            async for text in self._receive:
                await self._deliver(text)

    async def aclose(self) -> None:
        await self._send.aclose()

    async def _deliver(self, text: str) -> None:
        assert self.client is not None and self.chat_id is not None
        for attempt in (1, 2):
            try:
                await self.client.send_message(chat_id=self.chat_id, text=text)
                return
            except Exception as e:
                if attempt == 2:
                    logger.warning(
                        f"Failed to send to debug channel: {type(e).__name__}: {e}"
                    )
                    return
                await anyio.sleep(self.retry_delay_seconds)
