"""
Validation Aggregator.

Pure function over a snapshot of validator responses. No I/O, no clock of its
own: the caller passes ``started_at`` and ``now``.

Decision rules:
1. Every required validator responded (or, with no required set, at least
   one response and the quorum fraction met): decide on the mean.
2. Timeout elapsed:
   - no responses: fail, score 0
   - ``require_all_required`` and a required validator missing: fail
   - quorum met: decide on the mean of available scores
   - quorum not met: forced fail on the mean of available scores
3. Otherwise keep waiting.

pass iff mean >= threshold. A validator's later response replaces its earlier
one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Sequence, Tuple

from agentledger.indexer.models import ValidationResponseView


@dataclass(frozen=True)
class AggregationPolicy:
    required_validators: FrozenSet[str] = field(default_factory=frozenset)
    threshold: float = 80.0
    min_response_fraction: float = 0.5
    timeout_seconds: float = 3600.0
    require_all_required: bool = False

    @classmethod
    def from_settings(cls, settings) -> "AggregationPolicy":
        return cls(
            required_validators=frozenset(settings.required_validators),
            threshold=settings.score_threshold,
            min_response_fraction=settings.min_response_fraction,
            timeout_seconds=settings.aggregation_timeout,
            require_all_required=settings.require_all_required,
        )


@dataclass(frozen=True)
class AggregationDecision:
    ready: bool
    passed: bool = False
    score: float = 0.0
    responded: Tuple[str, ...] = ()
    missing: Tuple[str, ...] = ()
    forced: bool = False
    reason: str = "waiting"

    @property
    def verdict(self) -> str:
        return "pass" if self.passed else "fail"


def latest_by_validator(responses: Iterable[ValidationResponseView]) -> Dict[str, ValidationResponseView]:
    """Collapse responses to the latest one per validator."""
    latest: Dict[str, ValidationResponseView] = {}
    for response in responses:
        key = response.validator.lower()
        current = latest.get(key)
        if current is None or response.block_number >= current.block_number:
            latest[key] = response
    return latest


def aggregate(
    expected_validators: Sequence[str],
    responses: Iterable[ValidationResponseView],
    policy: AggregationPolicy,
    started_at: float,
    now: float,
) -> AggregationDecision:
    """Combine validator responses into a pass/fail decision."""
    expected: List[str] = list(dict.fromkeys(v.lower() for v in expected_validators))
    latest = {v: r for v, r in latest_by_validator(responses).items() if v in expected}
    responded = tuple(v for v in expected if v in latest)
    missing = tuple(v for v in expected if v not in latest)
    required = {v.lower() for v in policy.required_validators}

    scores = [latest[v].score for v in responded]
    mean = sum(scores) / len(scores) if scores else 0.0
    fraction = len(responded) / len(expected) if expected else 0.0
    quorum = bool(responded) and fraction >= policy.min_response_fraction

    def decide(reason: str, forced: bool, passed: bool) -> AggregationDecision:
        return AggregationDecision(
            ready=True,
            passed=passed,
            score=mean,
            responded=responded,
            missing=missing,
            forced=forced,
            reason=reason,
        )

    if required:
        if required.issubset(responded):
            return decide("required_responded", False, mean >= policy.threshold)
    elif quorum:
        return decide("quorum", False, mean >= policy.threshold)

    if now - started_at < policy.timeout_seconds:
        return AggregationDecision(ready=False, score=mean, responded=responded, missing=missing)

    if not responded:
        return AggregationDecision(
            ready=True, passed=False, score=0.0, responded=(), missing=missing,
            forced=True, reason="timeout_no_responses",
        )
    if policy.require_all_required and not required.issubset(responded):
        return decide("timeout_required_missing", True, False)
    if quorum:
        return decide("timeout_quorum", True, mean >= policy.threshold)
    return decide("timeout_below_quorum", True, False)
