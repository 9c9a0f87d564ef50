"""Quality plane: rubric scoring and gate policy."""

from stagegate.quality.gate import DEFAULT_THRESHOLDS, GatePolicy, GateVerdict, TrackThresholds
from stagegate.quality.rubric import (
    DEFAULT_DEDUCTIONS,
    RubricScorer,
    RubricTable,
    Score,
    load_rubric_file,
)

__all__ = [
    "DEFAULT_DEDUCTIONS",
    "DEFAULT_THRESHOLDS",
    "GatePolicy",
    "GateVerdict",
    "RubricScorer",
    "RubricTable",
    "Score",
    "TrackThresholds",
    "load_rubric_file",
]
