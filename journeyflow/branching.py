"""Branch evaluation for ``condition`` and ``split`` steps.

Everything here is pure: the same config and context always produce the
same label, so evaluation can be replayed safely.
"""

from __future__ import annotations

import hashlib
import logging
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "default"
FALLBACK_LABEL = "yes"


class BranchKind(str, Enum):
    SCORE_RANGE = "score_range"
    LEAD_GRADE = "lead_grade"
    SPLIT_CONDITION = "split_condition"
    WEIGHTED_SPLIT = "split_random"


class BranchContext(BaseModel):
    """What a branch may look at when choosing a label."""

    execution_id: str = ""
    step_id: str = ""
    organization_id: Optional[str] = None
    contact_id: Optional[str] = None
    contact: Dict[str, Any] = Field(default_factory=dict)


class ScoreRangeBranch(BaseModel):
    # TODO: compare the contact score against ``ranges`` once the expected
    # range semantics are agreed with product; until then every score takes
    # the "default" branch.
    type: Literal["score_range"]
    ranges: Any = None


class LeadGradeBranch(BaseModel):
    type: Literal["lead_grade"]
    grades: Any = None

    @model_validator(mode="before")
    @classmethod
    def _lift_nested_grades(cls, data: Any) -> Any:
        # Older step configs nest the grade table under ``config``.
        if isinstance(data, dict) and not isinstance(data.get("grades"), dict):
            nested = data.get("config")
            if isinstance(nested, dict) and isinstance(nested.get("grades"), dict):
                return {**data, "grades": nested["grades"]}
        return data


class SplitConditionBranch(BaseModel):
    type: Literal["split_condition"]
    field: Any = None
    operator: Any = None
    value: Any = None


class WeightedBranch(BaseModel):
    label: str
    percentage: float = Field(ge=0)


class WeightedSplitBranch(BaseModel):
    type: Literal["split_random"]
    branches: List[WeightedBranch] = Field(min_length=1)


class UnrecognizedBranch(BaseModel):
    type: Optional[str] = None


class InvalidBranch(BaseModel):
    """A known kind whose config could not be read."""

    type: str


KnownBranch = Annotated[
    Union[ScoreRangeBranch, LeadGradeBranch, SplitConditionBranch, WeightedSplitBranch],
    Field(discriminator="type"),
]
BranchConfig = Union[
    ScoreRangeBranch,
    LeadGradeBranch,
    SplitConditionBranch,
    WeightedSplitBranch,
    UnrecognizedBranch,
    InvalidBranch,
]

_known_adapter: TypeAdapter = TypeAdapter(KnownBranch)
_known_kinds = {kind.value for kind in BranchKind}
_KIND_ALIASES = {"field_condition": BranchKind.SPLIT_CONDITION.value}


def parse_branch(config: Mapping[str, Any]) -> BranchConfig:
    """Turn a free-form step config into its branch variant."""
    kind = config.get("type")
    if not isinstance(kind, str):
        return UnrecognizedBranch()
    kind = _KIND_ALIASES.get(kind, kind)
    if kind not in _known_kinds:
        return UnrecognizedBranch(type=kind)
    try:
        return _known_adapter.validate_python({**config, "type": kind})
    except ValidationError as exc:
        logger.warning("Unreadable %s branch config: %s", kind, exc.errors())
        return InvalidBranch(type=kind)


def _nested_value(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    return lambda a, b: _is_number(a) and _is_number(b) and compare(a, b)


def _textual(compare: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    return lambda a, b: isinstance(a, str) and isinstance(b, str) and compare(a, b)


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "neq": lambda a, b: a != b,
    "gt": _numeric(lambda a, b: a > b),
    "gte": _numeric(lambda a, b: a >= b),
    "lt": _numeric(lambda a, b: a < b),
    "lte": _numeric(lambda a, b: a <= b),
    "contains": _textual(lambda a, b: b in a),
    "not_contains": _textual(lambda a, b: b not in a),
    "starts_with": _textual(lambda a, b: a.startswith(b)),
    "ends_with": _textual(lambda a, b: a.endswith(b)),
    "is_set": lambda a, _: a is not None,
    "is_not_set": lambda a, _: a is None,
    "in": lambda a, b: isinstance(b, list) and a in b,
    "not_in": lambda a, b: isinstance(b, list) and a not in b,
}
_OPERATOR_ALIASES = {
    "equals": "eq",
    "not_equals": "neq",
    "greater_than": "gt",
    "greater_than_or_equals": "gte",
    "less_than": "lt",
    "less_than_or_equals": "lte",
}


def evaluate_condition(
    field: str, operator: str, value: Any, contact: Mapping[str, Any]
) -> bool:
    """Compare a (dotted) contact field against ``value``.

    Unknown operators never match.
    """
    compare = _OPERATORS.get(_OPERATOR_ALIASES.get(operator, operator))
    if compare is None:
        return False
    return compare(_nested_value(contact, field), value)


def pick_weighted(branches: List[WeightedBranch], seed: str) -> str:
    """Weighted choice whose randomness comes from hashing ``seed``."""
    total = sum(b.percentage for b in branches)
    if total <= 0:
        return branches[0].label
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    point = int.from_bytes(digest[:8], "big") / 2**64 * total
    cumulative = 0.0
    for branch in branches:
        cumulative += branch.percentage
        if point < cumulative:
            return branch.label
    return branches[-1].label


def _score_range(branch: ScoreRangeBranch, context: BranchContext) -> str:
    return DEFAULT_LABEL


def _lead_grade(branch: LeadGradeBranch, context: BranchContext) -> str:
    grades = branch.grades if isinstance(branch.grades, dict) else {}
    label = grades.get("default")
    return label if isinstance(label, str) and label else DEFAULT_LABEL


def _split_condition(branch: SplitConditionBranch, context: BranchContext) -> str:
    if not isinstance(branch.field, str) or not isinstance(branch.operator, str):
        return "no"
    matched = evaluate_condition(branch.field, branch.operator, branch.value, context.contact)
    return "yes" if matched else "no"


def _weighted_split(branch: WeightedSplitBranch, context: BranchContext) -> str:
    return pick_weighted(branch.branches, f"{context.execution_id}:{context.step_id}")


def _unrecognized(branch: UnrecognizedBranch, context: BranchContext) -> str:
    return FALLBACK_LABEL


def _invalid(branch: InvalidBranch, context: BranchContext) -> str:
    return DEFAULT_LABEL


_EVALUATORS: Dict[type, Callable[[Any, BranchContext], str]] = {
    ScoreRangeBranch: _score_range,
    LeadGradeBranch: _lead_grade,
    SplitConditionBranch: _split_condition,
    WeightedSplitBranch: _weighted_split,
    UnrecognizedBranch: _unrecognized,
    InvalidBranch: _invalid,
}


def evaluate_branch(
    config: Mapping[str, Any], context: Optional[BranchContext] = None
) -> str:
    """Map a step's config and the execution context to a branch label."""
    branch = parse_branch(config)
    return _EVALUATORS[type(branch)](branch, context or BranchContext())
