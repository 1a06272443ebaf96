"""Client for the optional remote transcript audit service."""

import os
from typing import Any

import httpx

from .config import (
    AUDIT_MAX_RETRIES,
    AUDIT_RETRY_BASE_DELAY,
    AUDIT_TASK,
    AUDIT_TIMEOUT,
    AUDIT_URL_ENV,
    UNKNOWN_SPEAKER,
)
from .exceptions import AuditError, NetworkError, TranscriptionTimeoutError
from .logging_utils import get_logger
from .models import DiarizationResult, MergedTranscript, SpeakerTurn
from .resilience import TimeoutBudget, call_with_timeout, retry_with_backoff

logger = get_logger(__name__)


class AuditClient:
    """Sends a finished transcript to an audit endpoint for reconciliation.

    The endpoint receives the engine transcript together with the live
    transcript and diarization, and answers with a reconciled transcript,
    speaker turns and an optional summary. When no endpoint is configured the
    client is disabled and callers keep their local merge.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        timeout: float = AUDIT_TIMEOUT,
        max_retries: int = AUDIT_MAX_RETRIES,
        retry_base_delay: float = AUDIT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint if endpoint is not None else os.environ.get(AUDIT_URL_ENV)
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    async def audit(
        self,
        transcript: str,
        web_speech: str | None = None,
        diarization: DiarizationResult | None = None,
        partial_transcripts: list[str] | None = None,
        confidence: float | None = None,
        language: str | None = None,
        task: str = AUDIT_TASK,
        timeout_budget: TimeoutBudget | None = None,
    ) -> MergedTranscript:
        """
        Request an audited transcript.

        Args:
            transcript: Engine transcript
            web_speech: Live recognizer transcript
            diarization: Speaker turns for the session
            partial_transcripts: Per-chunk texts in order
            confidence: Mean engine confidence
            language: Transcript language code
            task: Audit task name understood by the service
            timeout_budget: Session timeout budget shared with other calls

        Returns:
            The audited transcript

        Raises:
            AuditError: If the service is disabled, unreachable or reports failure
        """
        if not self.enabled:
            raise AuditError("Audit endpoint not configured")

        payload: dict[str, Any] = {"transcript": transcript, "task": task}
        if web_speech:
            payload["webSpeech"] = web_speech
        if diarization is not None:
            payload["diarization"] = [turn.to_dict() for turn in diarization.segments]
        if partial_transcripts:
            payload["partialTranscripts"] = partial_transcripts
        if confidence is not None:
            payload["confidence"] = confidence
        if language:
            payload["language"] = language

        budget = timeout_budget or TimeoutBudget()
        try:
            body = await retry_with_backoff(
                lambda: self._post(payload, budget),
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                operation="Transcript audit",
            )
        except (NetworkError, TranscriptionTimeoutError) as e:
            raise AuditError(f"Audit request failed: {e}") from e

        if not isinstance(body, dict):
            raise AuditError(f"Invalid response from audit service: expected an object, got {type(body).__name__}")
        if not body.get("success"):
            raise AuditError(f"Audit service reported failure: {body.get('error') or 'unknown error'}")

        try:
            merged = self._parse_data(body.get("data") or {}, transcript)
        except (TypeError, ValueError, AttributeError) as e:
            raise AuditError(f"Invalid response from audit service: {e}") from e
        logger.info(f"✅ Transcript audited ({len(merged.speakers)} speaker turns)")
        return merged

    @classmethod
    def _parse_data(cls, data: dict[str, Any], transcript: str) -> MergedTranscript:
        if not isinstance(data, dict):
            raise TypeError(f"'data' must be an object, got {type(data).__name__}")
        return MergedTranscript(
            merged_transcript=data.get("mergedTranscript") or transcript,
            speakers=[cls._parse_turn(turn) for turn in data.get("speakers") or []],
            summary=data.get("summary"),
            logs=list(data.get("gptLogs") or []),
            source="audit",
        )

    async def _post(self, payload: dict[str, Any], budget: TimeoutBudget) -> dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
            self._owns_client = True

        try:
            response = await call_with_timeout(
                lambda: self._client.post(self.endpoint, json=payload),
                self.timeout,
                budget,
                "Transcript audit request",
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Audit service unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"Audit service error {response.status_code}")
        if response.status_code >= 400:
            raise NetworkError(f"Audit request rejected {response.status_code}", recoverable=False)

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid response from audit service: {e}", recoverable=False) from e

    @staticmethod
    def _parse_turn(turn: dict[str, Any]) -> SpeakerTurn:
        return SpeakerTurn(
            start=float(turn.get("start", 0.0)),
            end=float(turn.get("end", 0.0)),
            speaker=turn.get("speaker") or UNKNOWN_SPEAKER,
            text=turn.get("text") or "",
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
