"""Live microphone transcription over a Deepgram streaming connection."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable

from voxscribe._types import AggregateResult
from voxscribe.cancellation import CancellationToken
from voxscribe.transcriber_deepgram import normalize_text

logger = logging.getLogger(__name__)


class LiveState(Enum):
    """Streaming session state."""

    CONNECTING = "connecting"
    OPEN = "open"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS = {
    LiveState.CONNECTING: {LiveState.OPEN, LiveState.CLOSING, LiveState.FAILED},
    LiveState.OPEN: {LiveState.STREAMING, LiveState.CLOSING, LiveState.FAILED},
    LiveState.STREAMING: {LiveState.CLOSING, LiveState.FAILED},
    LiveState.CLOSING: {LiveState.CLOSED, LiveState.FAILED},
    LiveState.CLOSED: {LiveState.CONNECTING},
    LiveState.FAILED: {LiveState.CONNECTING},
}


@dataclass(frozen=True)
class LiveTranscriptEvent:
    """Transcript increment delivered to the caller."""

    text: str
    transcript: str
    is_final: bool
    raw: dict


class DeepgramConnection:
    """Thin wrapper over the SDK's async listen socket."""

    def __init__(self, socket):
        self._socket = socket

    async def send(self, data: bytes) -> None:
        await self._socket.send_media(data)

    async def close_stream(self) -> None:
        await self._socket.send_close_stream()

    async def __aiter__(self):
        async for message in self._socket:
            yield message


def deepgram_connector(api_key: str) -> Callable:
    """Return a connect(options) factory bound to an API key."""

    @asynccontextmanager
    async def connect(options: dict) -> AsyncIterator[DeepgramConnection]:
        from deepgram import AsyncDeepgramClient

        client = AsyncDeepgramClient(api_key=api_key)
        async with client.listen.v1.connect(**options) as socket:
            yield DeepgramConnection(socket)

    return connect


_END = object()


class LiveTranscriber:
    """Streams audio blocks to Deepgram and emits transcript events.

    The session moves through CONNECTING -> OPEN -> STREAMING -> CLOSING ->
    CLOSED, or to FAILED on a connection error. Events travel from the
    receiver task to the caller through an asyncio.Queue. Cancelling the token
    (or reaching ``session_timeout``) ends the session gracefully and keeps
    everything transcribed so far in ``result``.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "nova-2",
        smart_format: bool = True,
        sample_rate: int = 16000,
        channels: int = 1,
        session_timeout: float = 600.0,
        drain_timeout: float = 5.0,
        connect: Callable | None = None,
    ):
        """Initialize live transcriber.

        Args:
            api_key: Deepgram API key
            model: Deepgram model
            smart_format: Enable smart formatting
            sample_rate: PCM sample rate of the audio blocks
            channels: PCM channel count
            session_timeout: Maximum session length in seconds
            drain_timeout: Seconds to wait for final results after closing
            connect: Factory returning an async context manager that yields a
                connection with ``send``, ``close_stream`` and async iteration
        """
        self.model = model
        self.smart_format = smart_format
        self.sample_rate = sample_rate
        self.channels = channels
        self.session_timeout = session_timeout
        self.drain_timeout = drain_timeout
        self._connect = connect or deepgram_connector(api_key)

        self.state = LiveState.CLOSED
        self._final_parts: list[str] = []
        self._raw: list[dict] = []
        self._bytes_sent = 0

    def _transition(self, new_state: LiveState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid live state transition: {self.state.value} -> {new_state.value}"
            )
        logger.info("Live state transition: %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def connect_options(self) -> dict:
        return {
            "model": self.model,
            "smart_format": str(self.smart_format).lower(),
            "interim_results": "true",
            "utterance_end_ms": "1000",
            "encoding": "linear16",
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
        }

    @property
    def transcript(self) -> str:
        return " ".join(self._final_parts).strip()

    @property
    def result(self) -> AggregateResult:
        """Everything finalized so far, shaped like a file transcription result."""
        return AggregateResult(
            transcript=self.transcript,
            raw_payloads=list(self._raw),
            processed_bytes=self._bytes_sent,
            chunk_format="live",
            chunk_count=len(self._final_parts),
        )

    async def stream(
        self,
        audio: AsyncIterator[bytes],
        token: CancellationToken,
    ) -> AsyncIterator[LiveTranscriptEvent]:
        """Run a session and yield transcript events as they arrive.

        Args:
            audio: Async iterator of PCM blocks
            token: Cancellation token; cancelling stops the session gracefully

        Yields:
            LiveTranscriptEvent for every non-empty transcript message

        Raises:
            RuntimeError: If the connection fails
        """
        self._transition(LiveState.CONNECTING)
        self._final_parts = []
        self._raw = []
        self._bytes_sent = 0

        events: asyncio.Queue = asyncio.Queue()
        runner = asyncio.create_task(self._run(audio, token, events))
        try:
            while True:
                item = await events.get()
                if item is _END:
                    break
                yield item
            await runner
        finally:
            if not runner.done():
                runner.cancel()
                await asyncio.gather(runner, return_exceptions=True)

    async def _run(
        self,
        audio: AsyncIterator[bytes],
        token: CancellationToken,
        events: asyncio.Queue,
    ) -> None:
        try:
            async with self._connect(self.connect_options()) as connection:
                if token.is_cancelled():
                    self._transition(LiveState.CLOSING)
                else:
                    self._transition(LiveState.OPEN)
                    await self._session(connection, audio, token, events)
            self._transition(LiveState.CLOSED)
        except asyncio.CancelledError:
            if self.state not in (LiveState.CLOSED, LiveState.FAILED):
                self.state = LiveState.CLOSED
            raise
        except Exception as e:
            logger.error("Live transcription failed: %s", e, exc_info=True)
            self.state = LiveState.FAILED
            raise RuntimeError(f"Deepgram connection failed: {e}") from e
        finally:
            events.put_nowait(_END)

    async def _session(self, connection, audio, token, events) -> None:
        receiver = asyncio.create_task(self._receive(connection, events))
        sender = asyncio.create_task(self._send(connection, audio, token))
        stop = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {receiver, sender, stop},
                timeout=self.session_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                logger.warning(
                    "Live session stopped after %.0f seconds", self.session_timeout
                )
            for task in (sender, receiver):
                if task.done() and not task.cancelled() and task.exception():
                    raise task.exception()

            self._transition(LiveState.CLOSING)
            if not sender.done():
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)

            if not receiver.done():
                await connection.close_stream()
                try:
                    await asyncio.wait_for(asyncio.shield(receiver), self.drain_timeout)
                except asyncio.TimeoutError:
                    logger.debug("Final results not received within %.1fs", self.drain_timeout)
        finally:
            stop.cancel()
            for task in (sender, receiver):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

    async def _send(self, connection, audio: AsyncIterator[bytes], token: CancellationToken) -> None:
        async for block in audio:
            if token.is_cancelled():
                break
            await connection.send(block)
            self._bytes_sent += len(block)
            if self.state is LiveState.OPEN:
                self._transition(LiveState.STREAMING)
        logger.debug("Audio source finished after %d bytes", self._bytes_sent)

    async def _receive(self, connection, events: asyncio.Queue) -> None:
        async for message in connection:
            event = self._to_event(message)
            if event is not None:
                events.put_nowait(event)

    def _to_event(self, message) -> LiveTranscriptEvent | None:
        payload = message if isinstance(message, dict) else message.model_dump(mode="json")
        if payload.get("type", "Results") != "Results":
            return None

        try:
            text = payload["channel"]["alternatives"][0]["transcript"]
        except (KeyError, IndexError, TypeError):
            return None
        if not isinstance(text, str) or not text.strip():
            return None

        text = normalize_text(text)
        is_final = bool(payload.get("is_final", False))
        if is_final:
            self._final_parts.append(text)
            self._raw.append(payload)
            transcript = self.transcript
        else:
            transcript = f"{self.transcript} {text}".strip()

        return LiveTranscriptEvent(
            text=text, transcript=transcript, is_final=is_final, raw=payload
        )
