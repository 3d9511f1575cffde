"""Error types raised by the transcription pipeline."""

__all__ = [
    "PipelineError",
    "SourceInvalidError",
    "ToolMissingError",
    "InvalidApiKeyError",
    "ChunkingError",
    "TranscriptionCancelled",
]


class PipelineError(Exception):
    """Terminal pipeline failure. ``stage`` names where it happened."""

    stage = "pipeline"


class SourceInvalidError(PipelineError):
    """Source file missing, empty, or not a recognized audio/video format."""

    stage = "validation"


class ToolMissingError(PipelineError):
    """A required external binary (ffmpeg) could not be found."""

    stage = "environment"


class InvalidApiKeyError(PipelineError):
    """Deepgram rejected the configured API key."""

    stage = "validation"


class ChunkingError(PipelineError):
    """Every segmentation strategy failed to produce valid chunks."""

    stage = "chunking"


class TranscriptionCancelled(Exception):
    """Raised when the request's cancellation token fires.

    Not a PipelineError: cancellation is a user decision, not a failure.
    """

    def __init__(self, message: str = "Transcription cancelled"):
        super().__init__(message)
