"""Pre-recorded chunk transcription via Deepgram API."""

import asyncio
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from voxscribe._types import RecognitionOptions
from voxscribe.errors import InvalidApiKeyError

logger = logging.getLogger(__name__)


def extract_transcript(payload) -> str | None:
    """Pull ``results.channels[0].alternatives[0].transcript`` from a response.

    Returns:
        The transcript string (possibly empty), or None if the payload does not
        have the expected shape
    """
    try:
        transcript = payload["results"]["channels"][0]["alternatives"][0]["transcript"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(transcript, str):
        return None
    return transcript


def normalize_text(text: str) -> str:
    """Collapse whitespace runs and strip the ends."""
    return re.sub(r"\s+", " ", text).strip()


def _response_to_payload(response) -> dict:
    """Convert an SDK response model into a JSON-compatible dict."""
    if isinstance(response, dict):
        return response
    return response.model_dump(mode="json", exclude_none=True)


class DeepgramTranscriber:
    """Encapsulates Deepgram API client and chunk transcription.

    Runs each request inside a thread pool executor to avoid blocking the event
    loop. The pool is sized to the scheduler's concurrency so that many chunks
    can be in flight at once. Lazy-initializes client on first use.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "nova-2",
        smart_format: bool = True,
        detect_language: bool = True,
        timeout: float = 600.0,
        max_workers: int = 3,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize Deepgram transcriber.

        Args:
            api_key: Deepgram API key
            model: Deepgram model (nova-2, nova-3, whisper-large, etc.)
            smart_format: Enable smart formatting (punctuation, dates, etc.)
            detect_language: Let Deepgram detect the spoken language
            timeout: Per-request timeout in seconds
            max_workers: Thread pool size when no executor is supplied
            executor: Optional ThreadPoolExecutor for requests
        """
        self.api_key = api_key
        self.options = RecognitionOptions(
            model=model,
            detect_language=detect_language,
            smart_format=smart_format,
        )
        self.timeout = timeout
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="deepgram"
        )
        self._executor_owned = executor is None
        self._client = None
        self._client_lock = asyncio.Lock()
        logger.info(
            "DeepgramTranscriber initialized: model=%s, smart_format=%s, detect_language=%s",
            model,
            smart_format,
            detect_language,
        )

    async def _ensure_client_initialized(self) -> None:
        """Lazy-initialize Deepgram client on first use.

        Uses asyncio.Lock to prevent concurrent initialization attempts.

        Raises:
            RuntimeError: If client initialization fails
        """
        async with self._client_lock:
            if self._client is not None:
                return

            logger.info("Initializing Deepgram client with model: %s", self.options.model)

            try:
                from deepgram import DeepgramClient

                start_time = time.perf_counter()
                self._client = DeepgramClient(api_key=self.api_key)
                duration = time.perf_counter() - start_time
                logger.info("Deepgram client initialized in %.3f seconds", duration)
            except Exception as e:
                logger.error("Failed to initialize Deepgram client: %s", e)
                raise RuntimeError(f"Failed to initialize Deepgram client: {e}") from e

    async def validate_api_key(self) -> None:
        """Check that Deepgram accepts the API key.

        Raises:
            InvalidApiKeyError: If the key is missing or rejected
        """
        if not self.api_key:
            raise InvalidApiKeyError("Deepgram API key is not configured")

        await self._ensure_client_initialized()
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(self.executor, self._validate_sync),
                timeout=30.0,
            )
        except InvalidApiKeyError:
            raise
        except asyncio.TimeoutError as e:
            raise InvalidApiKeyError("Timed out validating Deepgram API key") from e
        except Exception as e:
            logger.error("API key validation failed: %s", e)
            raise InvalidApiKeyError(f"Could not validate Deepgram API key: {e}") from e
        logger.info("Deepgram API key validated")

    def _validate_sync(self) -> None:
        from deepgram.core.api_error import ApiError

        try:
            self._client.manage.v1.projects.list()
        except ApiError as e:
            if e.status_code in (401, 403):
                raise InvalidApiKeyError("Invalid Deepgram API key") from e
            raise RuntimeError(f"Deepgram API error ({e.status_code}): {e.body}") from e

    async def transcribe(
        self,
        audio_path: Path,
        options: RecognitionOptions | None = None,
    ) -> dict:
        """Transcribe one audio file and return the raw response payload.

        Args:
            audio_path: Path to chunk file
            options: Per-request options; defaults to the instance options

        Returns:
            Response as a JSON-compatible dict

        Raises:
            RuntimeError: If the file is missing, the request fails, or times out
        """
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise RuntimeError(f"Audio file not found: {audio_path}")

        await self._ensure_client_initialized()

        logger.debug("Sending %s to Deepgram", audio_path.name)

        try:
            return await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    self.executor,
                    self._transcribe_sync,
                    audio_path,
                    options or self.options,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Transcription timed out after %.1f seconds", self.timeout)
            raise RuntimeError(
                f"Transcription timed out after {self.timeout} seconds"
            ) from e

    def _transcribe_sync(self, audio_path: Path, options: RecognitionOptions) -> dict:
        """Synchronous request to Deepgram API (runs in thread pool).

        Raises:
            RuntimeError: If the request fails
        """
        if self._client is None:
            raise RuntimeError("Deepgram client not initialized")

        with open(audio_path, "rb") as audio_file:
            audio_bytes = audio_file.read()

        request_options = {
            "model": options.model,
            "smart_format": options.smart_format,
            "detect_language": options.detect_language,
        }
        logger.debug("Deepgram options: %s (%d bytes)", request_options, len(audio_bytes))

        from deepgram.core.api_error import ApiError

        try:
            response = self._client.listen.v1.media.transcribe_file(
                request=audio_bytes,
                **request_options
            )
        except ApiError as e:
            if e.status_code == 401:
                raise RuntimeError("Invalid Deepgram API key") from e
            elif e.status_code == 429:
                raise RuntimeError("Deepgram API rate limit exceeded") from e
            elif e.status_code >= 500:
                raise RuntimeError(f"Deepgram server error: {e.status_code}") from e
            else:
                raise RuntimeError(f"Deepgram API error ({e.status_code}): {e.body}") from e

        return _response_to_payload(response)

    async def shutdown(self, wait: bool = True) -> None:
        """Release client and stop the thread pool if owned by this instance.

        Args:
            wait: Wait for in-flight requests; False abandons them
        """
        logger.info("DeepgramTranscriber shutting down")
        self._client = None
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=wait, cancel_futures=not wait)
            logger.debug("Executor shut down")
