"""Configuration constants for the consultation transcription pipeline."""

# Audio Configuration
DEFAULT_SAMPLE_RATE = 16000  # Hz, rate every engine consumes
DEFAULT_CAPTURE_SAMPLE_RATE = 48000  # Hz, microphone capture rate
DEFAULT_FRAME_SIZE = 4096  # samples per PortAudio callback
AUDIO_SAMPLE_MAX_VALUE = 1.0  # float32 full scale
MAX_SESSION_AUDIO_SECONDS = 30 * 60  # seconds of raw audio kept for diarization

# Chunking
MIN_CHUNK_SECONDS = 2.0  # seconds - smallest chunk an engine accepts
CHUNK_DURATION_TOLERANCE = 0.01  # seconds - rounding slack on chunk length

# Denoiser
DENOISER_AGGRESSIVENESS = 0.5  # 0.0-1.0, strength of spectral subtraction
DENOISER_FFT_SIZE = 512  # samples per STFT frame
DENOISER_PROFILE_FRAMES = 4  # capture frames used to learn the noise profile
DENOISER_ADAPTATION_RATE = 0.1  # EMA weight for noise profile updates

# Confidence
NOMINAL_CONFIDENCE = 0.9  # reported when an engine has no real confidence
REMOTE_CONFIDENCE = 0.95  # reported for remote API segments
CONFIDENCE_LOGPROB_MIN = -2.0  # Minimum expected avg_logprob value
CONFIDENCE_LOGPROB_MAX = -0.1  # Maximum expected avg_logprob value

# Engines
ENGINE_LOCAL_WHISPER = "local-whisper"
ENGINE_REMOTE_API = "remote-api"
ENGINE_NATIVE_SPEECH = "native-speech"
DEFAULT_ENGINE_PRIORITY = [ENGINE_LOCAL_WHISPER, ENGINE_REMOTE_API, ENGINE_NATIVE_SPEECH]
ENGINE_ALIASES = {"wasm-local": ENGINE_LOCAL_WHISPER}  # former ids, resolved by the engine factory
DEFAULT_LANGUAGE = "es"
ORCHESTRATOR_MAX_CONSECUTIVE_ERRORS = 3  # recoverable network errors before switching engine
ORCHESTRATOR_DRAIN_TIMEOUT = 60.0  # seconds to wait for queued chunks on stop

# Local Whisper
LOCAL_WHISPER_MODEL_URL = "https://huggingface.co/Systran/faster-whisper-base/resolve/main"
LOCAL_WHISPER_MODEL_FILES = ("config.json", "model.bin", "tokenizer.json", "vocabulary.txt")
LOCAL_WHISPER_DEVICE = "cpu"
LOCAL_WHISPER_COMPUTE_TYPE = "int8"
LOCAL_WHISPER_BEAM_SIZE = 5

# Model Asset Cache
MODEL_DOWNLOAD_TIMEOUT = 120.0  # seconds per request
MODEL_CACHE_MAX_AGE = 7 * 24 * 3600  # seconds before a cached asset is refetched
MODEL_CACHE_QUOTA_MARGIN = 1.1  # free space required relative to asset size
MODEL_DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # bytes per streamed read

# Remote API
REMOTE_API_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
REMOTE_API_KEY_ENV = "OPENAI_API_KEY"
REMOTE_MODEL = "whisper-1"
REMOTE_TEMPERATURE = 0.0
REMOTE_TIMEOUT = 30.0  # seconds
REMOTE_MAX_RETRIES = 3
REMOTE_RETRY_BASE_DELAY = 1.0  # seconds, multiplied by attempt number

# Cost Optimizer
REMOTE_PRICE_PER_MINUTE = 0.006  # USD
REMOTE_BUDGET_LIMIT = 50.0  # USD per optimizer lifetime
REMOTE_COST_THRESHOLD = 0.10  # USD, cost at which a single request scores zero
REMOTE_MAX_DURATION_PER_REQUEST = 600.0  # seconds, always send beyond this
REMOTE_QUALITY_SCORE = 0.95  # expected API quality used in efficiency scoring
REMOTE_EFFICIENCY_THRESHOLD = 0.7  # minimum efficiency score to send a batch
REMOTE_BUDGET_WARNING_RATIO = 0.8  # fraction of budget after which batching grows
REMOTE_DEFERRED_BATCH_SECONDS = 30.0  # seconds buffered per call near the budget

# Native Speech
NATIVE_RECOVERABLE_ERRORS = ("network", "audio-capture", "no-speech", "aborted")
NATIVE_CRITICAL_ERRORS = ("not-allowed", "service-not-allowed", "bad-grammar")
NATIVE_MAX_CONSECUTIVE_ERRORS = 3  # unknown errors before the circuit opens
NATIVE_CIRCUIT_BREAKER_TIMEOUT = 30.0  # seconds the circuit stays open
NATIVE_RECOGNIZER_MODEL = "tiny"  # faster-whisper model for streaming recognition
NATIVE_END_OF_UTTERANCE_SILENCE = 0.8  # seconds - silence that ends an utterance
NATIVE_INTERIM_INTERVAL = 1.0  # seconds between interim hypotheses
NATIVE_MAX_UTTERANCE_SECONDS = 30.0  # seconds - force a final result

# Voice Activity Detection
VAD_AGGRESSIVENESS = 2  # 0-3, higher = more aggressive filtering
VAD_FRAME_DURATION = 30  # milliseconds
VAD_SUPPORTED_SAMPLE_RATES = [8000, 16000, 32000, 48000]  # Hz
VAD_SUPPORTED_FRAME_DURATIONS = [10, 20, 30]  # milliseconds

# Diarization
DIARIZATION_MIN_AUDIO_SECONDS = 1.0  # seconds - shorter audio cannot be diarized
DIARIZATION_WINDOW_SECONDS = 1.0  # seconds per embedding window
DIARIZATION_HOP_SECONDS = 0.5  # seconds between window starts
DIARIZATION_FFT_SIZE = 512  # samples per STFT frame inside a window
DIARIZATION_BANDS = 24  # log-spaced spectral bands per embedding
DIARIZATION_MIN_FREQUENCY = 80.0  # Hz
DIARIZATION_MAX_FREQUENCY = 8000.0  # Hz
DIARIZATION_CHANGE_THRESHOLD = 0.5  # cosine distance that marks a speaker change
DIARIZATION_MIN_EMBEDDING_DISTANCE = 2.0  # log-energy distance below which windows count as one voice
DIARIZATION_MIN_SEGMENT_SECONDS = 1.0  # seconds - shorter turns merge into neighbours
DIARIZATION_SILENCE_RMS = 0.01  # windows below this RMS are treated as silence
DIARIZATION_MAX_SPEAKERS = 2
DIARIZATION_SPEAKER_LABELS = ("Doctor", "Patient")
DIARIZATION_TIMEOUT = 60.0  # seconds
UNKNOWN_SPEAKER = "Unknown"

# Transcript Merging
MERGE_WORD_SIMILARITY_THRESHOLD = 0.7  # Levenshtein similarity for "same word"

# Audit Endpoint
AUDIT_URL_ENV = "CONSULT_SCRIBE_AUDIT_URL"
AUDIT_TIMEOUT = 45.0  # seconds
AUDIT_MAX_RETRIES = 2
AUDIT_RETRY_BASE_DELAY = 1.0  # seconds
AUDIT_TASK = "audit-transcript"

# Session
AUTO_STOP_SILENCE_SECONDS = 8.0  # seconds of quiet before automatic mode stops
AUTO_STOP_LEVEL_THRESHOLD = 0.02  # audio level regarded as quiet
TIMEOUT_RETRIES_PER_SESSION = 1  # timeouts treated as recoverable per session
