"""Timing and throughput accounting for chat requests.

``StatsAccumulator`` is the only writer of a ``RequestStats`` record while a
request is running.  The stream producer calls :meth:`record_token` once per
non-empty text delta and :meth:`finalize` exactly once when the stream
terminates; after that the record is frozen and may be handed to readers.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from chat_tui.config import PricingConfig
from chat_tui.types import RequestStats

_logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class StatsAccumulator:
    """Derives ``RequestStats`` fields from token arrival times."""

    def __init__(
        self,
        model: str = "",
        clock: Clock = time.monotonic,
        pricing: PricingConfig | None = None,
    ) -> None:
        self._clock = clock
        self._pricing = pricing
        self._tokens = 0
        self._finalized = False
        self.stats = RequestStats(model=model, start_time=clock())

    @property
    def finalized(self) -> bool:
        return self._finalized

    def record_status(self, status: int) -> None:
        self.stats.http_status = status

    def record_token(self) -> bool:
        """Count one observed token.  Returns ``True`` for the first one."""
        self._check_open()
        self._tokens += 1
        self.stats.output_tokens = self._tokens
        if self.stats.first_token_time is None:
            now = self._clock()
            self.stats.first_token_time = now
            self.stats.time_to_first_token = now - self.stats.start_time
            return True
        return False

    def record_usage(self, usage: dict[str, int], completion: bool = False) -> None:
        """Take token counts from a backend-reported usage object.

        While streaming only the prompt count is used and output tokens stay
        the observed count.  With *completion* (non-streaming replies) the
        reported completion count replaces the observed one.
        """
        self._check_open()
        prompt = usage.get("prompt_tokens")
        if isinstance(prompt, int):
            self.stats.input_tokens = prompt
        if completion:
            produced = usage.get("completion_tokens")
            if isinstance(produced, int):
                self._tokens = produced
                self.stats.output_tokens = produced

    def finalize(self) -> RequestStats:
        """Stamp end time and derive rates.  Idempotent."""
        if self._finalized:
            return self.stats
        self._finalized = True

        s = self.stats
        s.end_time = self._clock()
        s.total_latency = s.end_time - s.start_time
        s.output_tokens = self._tokens
        s.total_tokens = s.input_tokens + s.output_tokens

        if s.first_token_time is not None:
            s.generation_time = s.end_time - s.first_token_time
            if self._tokens > 1 and s.generation_time > 0:
                s.post_first_token_tokens_per_sec = (
                    (self._tokens - 1) / s.generation_time
                )
        if self._tokens > 0 and s.total_latency > 0:
            s.avg_tokens_per_sec = self._tokens / s.total_latency

        if self._pricing is not None:
            s.cost_estimate = self._pricing.estimate(s.input_tokens, s.output_tokens)

        _logger.debug(
            "Request finished: %d tokens in %.3fs (ttft=%s)",
            s.output_tokens, s.total_latency, s.time_to_first_token,
        )
        return s

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError("stats already finalized")


@dataclass
class SessionUsage:
    """Running totals over the completed requests of this process."""

    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    priced: bool = False
    history: list[RequestStats] = field(default_factory=list)
    _max_history: int = 100

    def add(self, stats: RequestStats) -> None:
        self.requests += 1
        self.input_tokens += stats.input_tokens
        self.output_tokens += stats.output_tokens
        self.total_tokens += stats.total_tokens
        if stats.cost_estimate is not None:
            self.cost += stats.cost_estimate
            self.priced = True
        self.history.append(stats)
        if len(self.history) > self._max_history:
            self.history = self.history[-self._max_history:]

    @property
    def last(self) -> RequestStats | None:
        return self.history[-1] if self.history else None
