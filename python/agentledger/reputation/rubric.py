"""
Scoring rubric: task outcome -> feedback score (0-100).

Default rubric:
    clean merge            85
    zero review comments  +10
    more than 5 comments  -10
    changes requested     -15
    rejections            20-30 by cause (tests_failed/security 20,
                          validation_failed 25, anything else 30)

Deployments override it with a YAML or JSON file::

    base_score: 85
    zero_comment_bonus: 10
    many_comments_threshold: 5
    many_comments_penalty: 10
    changes_requested_penalty: 15
    rejection_scores:
      tests_failed: 20
      security: 20
"""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from agentledger.chain.events import SCORE_MAX, SCORE_MIN
from agentledger.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskOutcome:
    """Inputs the rubric scores."""
    passed: bool
    tests_passed: bool = True
    coverage_pct: Optional[float] = None
    review_comment_count: int = 0
    changes_requested: bool = False
    rejection_cause: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _default_rejections() -> Dict[str, int]:
    return {"tests_failed": 20, "security": 20, "validation_failed": 25}


@dataclass(frozen=True)
class ScoringRubric:
    base_score: int = 85
    zero_comment_bonus: int = 10
    many_comments_threshold: int = 5
    many_comments_penalty: int = 10
    changes_requested_penalty: int = 15
    failed_tests_penalty: int = 0
    coverage_target: Optional[float] = None
    coverage_bonus: int = 0
    rejection_scores: Dict[str, int] = field(default_factory=_default_rejections)
    default_rejection_score: int = 30

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoringRubric":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown rubric keys: {sorted(unknown)}")
        values = dict(data)
        if "rejection_scores" in values:
            if not isinstance(values["rejection_scores"], dict):
                raise ConfigurationError("Rubric rejection_scores must be a mapping of cause to score")
            values["rejection_scores"] = {**_default_rejections(), **values["rejection_scores"]}
        return cls(**values)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ScoringRubric":
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read rubric {path}: {exc}") from exc
        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot parse rubric {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Rubric {path} must be a mapping")
        logger.info("Loaded scoring rubric from %s", path)
        return cls.from_dict(data)

    def score(self, outcome: TaskOutcome) -> int:
        if not outcome.passed:
            cause = outcome.rejection_cause or ("tests_failed" if not outcome.tests_passed else "")
            raw = self.rejection_scores.get(cause, self.default_rejection_score)
            return max(SCORE_MIN, min(SCORE_MAX, raw))

        raw = self.base_score
        if outcome.review_comment_count == 0:
            raw += self.zero_comment_bonus
        elif outcome.review_comment_count > self.many_comments_threshold:
            raw -= self.many_comments_penalty
        if outcome.changes_requested:
            raw -= self.changes_requested_penalty
        if not outcome.tests_passed:
            raw -= self.failed_tests_penalty
        if (
            self.coverage_target is not None
            and outcome.coverage_pct is not None
            and outcome.coverage_pct >= self.coverage_target
        ):
            raw += self.coverage_bonus
        return max(SCORE_MIN, min(SCORE_MAX, raw))
