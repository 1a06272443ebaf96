"""Custom exceptions for the transcription pipeline."""


class TranscriptionPipelineError(Exception):
    """Base exception for transcription pipeline errors."""

    code = "PIPELINE_ERROR"
    recoverable = False

    def __init__(self, message: str = "", *, recoverable: bool | None = None) -> None:
        super().__init__(message)
        if recoverable is not None:
            self.recoverable = recoverable


class AudioCaptureError(TranscriptionPipelineError):
    """Exception raised for audio capture related errors."""

    code = "AUDIO_CAPTURE_ERROR"


class MicrophonePermissionError(AudioCaptureError):
    """Exception raised when microphone access is denied or no device exists."""

    code = "PERMISSION_DENIED"


class DenoiserUnavailableError(AudioCaptureError):
    """Exception raised when the denoising capture path cannot initialize."""

    code = "DENOISER_UNAVAILABLE"


class EngineInitError(TranscriptionPipelineError):
    """Exception raised when a transcription engine fails to initialize."""

    code = "ENGINE_INIT_FAILED"


class ModelAssetError(EngineInitError):
    """Exception raised when model assets cannot be fetched or stored."""

    code = "MODEL_ASSET_ERROR"


class ChunkTooSmallError(TranscriptionPipelineError):
    """Exception raised for audio chunks below the minimum duration."""

    code = "CHUNK_TOO_SMALL"
    recoverable = True


class NetworkError(TranscriptionPipelineError):
    """Exception raised for failed requests to remote services."""

    code = "NETWORK_ERROR"
    recoverable = True


class BudgetExceededError(TranscriptionPipelineError):
    """Exception raised when a remote call would exceed the cost budget."""

    code = "BUDGET_EXCEEDED"
    recoverable = True


class RecognizerError(TranscriptionPipelineError):
    """Exception raised by a streaming recognizer with a platform error code."""

    code = "RECOGNIZER_ERROR"

    def __init__(self, error_code: str, message: str = "", *, recoverable: bool | None = None) -> None:
        super().__init__(message or f"Recognizer error: {error_code}", recoverable=recoverable)
        self.error_code = error_code


class DiarizationError(TranscriptionPipelineError):
    """Exception raised when speaker diarization cannot run."""

    code = "DIARIZATION_ERROR"
    recoverable = True


class AuditError(TranscriptionPipelineError):
    """Exception raised when the remote audit endpoint fails."""

    code = "AUDIT_FAILED"
    recoverable = True


class TranscriptionTimeoutError(TranscriptionPipelineError):
    """Exception raised when an awaited operation exceeds its timeout."""

    code = "TIMEOUT"
    recoverable = True


class InvalidStateTransitionError(TranscriptionPipelineError):
    """Exception raised for a transition the session state machine forbids."""

    code = "INVALID_STATE_TRANSITION"
