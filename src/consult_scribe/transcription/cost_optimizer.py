"""Cost tracking and batching decisions for the remote transcription API."""

from enum import Enum
from typing import Any

from .config import (
    REMOTE_BUDGET_LIMIT,
    REMOTE_BUDGET_WARNING_RATIO,
    REMOTE_COST_THRESHOLD,
    REMOTE_DEFERRED_BATCH_SECONDS,
    REMOTE_EFFICIENCY_THRESHOLD,
    REMOTE_MAX_DURATION_PER_REQUEST,
    REMOTE_PRICE_PER_MINUTE,
    REMOTE_QUALITY_SCORE,
)
from .logging_utils import get_logger

logger = get_logger(__name__)


class CostDecision(str, Enum):
    """What to do with the currently buffered audio."""

    PROCESS = "process"
    DEFER = "defer"
    SKIP = "skip"


class CostOptimizer:
    """Decides when buffered audio is worth a paid API call."""

    def __init__(
        self,
        price_per_minute: float = REMOTE_PRICE_PER_MINUTE,
        budget_limit: float = REMOTE_BUDGET_LIMIT,
        cost_threshold: float = REMOTE_COST_THRESHOLD,
        max_duration_per_request: float = REMOTE_MAX_DURATION_PER_REQUEST,
        quality_score: float = REMOTE_QUALITY_SCORE,
        efficiency_threshold: float = REMOTE_EFFICIENCY_THRESHOLD,
        budget_warning_ratio: float = REMOTE_BUDGET_WARNING_RATIO,
        deferred_batch_seconds: float = REMOTE_DEFERRED_BATCH_SECONDS,
    ) -> None:
        self.price_per_minute = price_per_minute
        self.budget_limit = budget_limit
        self.cost_threshold = cost_threshold
        self.max_duration_per_request = max_duration_per_request
        self.quality_score = quality_score
        self.efficiency_threshold = efficiency_threshold
        self.budget_warning_ratio = budget_warning_ratio
        self.deferred_batch_seconds = deferred_batch_seconds

        self.total_cost = 0.0
        self.api_calls = 0
        self.processed_seconds = 0.0

    def estimate_cost(self, duration_seconds: float) -> float:
        return (duration_seconds / 60.0) * self.price_per_minute

    @property
    def remaining_budget(self) -> float:
        return max(0.0, self.budget_limit - self.total_cost)

    def efficiency(self, duration_seconds: float) -> float:
        """Weighted score of quality, latency and cost for one request."""
        cost = self.estimate_cost(duration_seconds)
        speed_score = max(0.0, 1.0 - duration_seconds / self.max_duration_per_request)
        cost_score = max(0.0, 1.0 - cost / self.cost_threshold)
        return self.quality_score * 0.5 + speed_score * 0.3 + cost_score * 0.2

    def evaluate(self, buffered_seconds: float, final: bool = False) -> CostDecision:
        """
        Decide whether buffered audio should be sent now.

        Args:
            buffered_seconds: Duration of audio waiting to be sent
            final: True when the session is ending and nothing more will arrive

        Returns:
            PROCESS to send, DEFER to keep buffering, SKIP to drop the audio
        """
        cost = self.estimate_cost(buffered_seconds)
        if self.total_cost + cost > self.budget_limit:
            logger.warning(
                f"⚠️ Budget limit reached: ${self.total_cost:.4f} spent, "
                f"${cost:.4f} requested of ${self.budget_limit:.2f}"
            )
            return CostDecision.SKIP

        if final or buffered_seconds >= self.max_duration_per_request:
            return CostDecision.PROCESS

        near_budget = self.total_cost >= self.budget_limit * self.budget_warning_ratio
        if near_budget and buffered_seconds < self.deferred_batch_seconds:
            logger.trace(f"Near budget, deferring {buffered_seconds:.1f}s of audio")
            return CostDecision.DEFER

        if self.efficiency(buffered_seconds) > self.efficiency_threshold:
            return CostDecision.PROCESS
        return CostDecision.DEFER

    def record_call(self, duration_seconds: float) -> float:
        """Account for a completed API call and return its cost."""
        cost = self.estimate_cost(duration_seconds)
        self.total_cost += cost
        self.api_calls += 1
        self.processed_seconds += duration_seconds
        logger.debug(
            f"💰 API call {self.api_calls}: {duration_seconds:.1f}s, "
            f"${cost:.4f} (total ${self.total_cost:.4f})"
        )
        return cost

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_cost": self.total_cost,
            "api_calls": self.api_calls,
            "processed_seconds": self.processed_seconds,
            "remaining_budget": self.remaining_budget,
            "average_cost_per_call": self.total_cost / self.api_calls if self.api_calls else 0.0,
        }
