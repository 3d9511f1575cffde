"""Microphone capture for live transcription."""

import asyncio
import logging
from typing import AsyncIterator

import numpy as np
import sounddevice

from voxscribe.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class MicrophoneSource:
    """Streams microphone audio as 16-bit little-endian PCM bytes.

    A sounddevice InputStream delivers float32 frames on its own thread; the
    callback converts them and hands them to the event loop through a queue.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_size: int = 4096,
        device: int | str | None = None,
    ):
        """Initialize microphone source.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels
            chunk_size: Frames per callback block
            device: Audio device index or name (None for default)
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.device = device

        self._stream = None
        self._queue: asyncio.Queue[bytes] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        logger.info(
            "MicrophoneSource initialized: %d Hz, %d channels, device=%s",
            sample_rate,
            channels,
            device if device is not None else "default",
        )

    async def frames(self, token: CancellationToken) -> AsyncIterator[bytes]:
        """Yield PCM blocks until the token is cancelled.

        Raises:
            RuntimeError: If the stream cannot be opened
        """
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._open()

        cancelled = asyncio.ensure_future(token.wait())
        try:
            while not token.is_cancelled():
                getter = asyncio.ensure_future(self._queue.get())
                done, _ = await asyncio.wait(
                    {getter, cancelled}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter not in done:
                    getter.cancel()
                    break
                yield getter.result()
        finally:
            cancelled.cancel()
            self.close()

    def _open(self) -> None:
        try:
            self._stream = sounddevice.InputStream(
                device=self.device,
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.chunk_size,
                callback=self._callback,
                dtype="float32",
            )
            self._stream.start()
            logger.info("Microphone stream started")
        except Exception as e:
            self._stream = None
            logger.error("Failed to start audio stream: %s", e)
            raise RuntimeError(f"Failed to start audio stream: {e}") from e

    def close(self) -> None:
        """Stop and close the stream."""
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
                logger.info("Microphone stream stopped")
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                self._stream = None

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival (audio thread)."""
        if status:
            logger.warning("Audio stream status: %s", status)

        pcm = to_pcm16(indata)
        if self._loop is not None and self._queue is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, pcm)

    @staticmethod
    def list_devices() -> list[dict]:
        """List available audio capture devices.

        Returns:
            Device dicts with keys: index, name, channels, sample_rate.
            Empty list if none found or an error occurs.
        """
        try:
            devices = sounddevice.query_devices()

            if isinstance(devices, dict):
                devices = [devices]

            result = []
            for idx, dev_info in enumerate(devices):
                if dev_info.get("max_input_channels", 0) > 0:
                    result.append(
                        {
                            "index": idx,
                            "name": dev_info.get("name", f"Device {idx}"),
                            "channels": dev_info.get("max_input_channels", 0),
                            "sample_rate": dev_info.get("default_samplerate", 0),
                        }
                    )

            logger.debug("Found %d audio input devices", len(result))
            return result

        except sounddevice.PortAudioError as e:
            logger.warning("PortAudio error querying devices: %s", e)
            return []
        except Exception as e:
            logger.warning("Error querying audio devices: %s", e)
            return []


def to_pcm16(frames: np.ndarray) -> bytes:
    """Convert float32 frames in [-1, 1] to little-endian int16 bytes."""
    audio_int16 = np.clip(frames * 32767, -32768, 32767).astype("<i2")
    return audio_int16.tobytes()
