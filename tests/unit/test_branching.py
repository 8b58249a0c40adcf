from collections import Counter

import pytest

from journeyflow.branching import (
    BranchContext,
    SplitConditionBranch,
    WeightedBranch,
    evaluate_branch,
    evaluate_condition,
    parse_branch,
    pick_weighted,
)


def test_lead_grade_uses_default_grade():
    assert evaluate_branch({"type": "lead_grade", "grades": {"default": "hot"}}) == "hot"


def test_lead_grade_reads_nested_grade_table():
    config = {"type": "lead_grade", "config": {"grades": {"default": "warm"}}}
    assert evaluate_branch(config) == "warm"


def test_lead_grade_without_default_falls_back():
    assert evaluate_branch({"type": "lead_grade", "grades": {"A": "hot"}}) == "default"


def test_score_range_takes_default_branch():
    config = {"type": "score_range", "ranges": [{"min": 0, "max": 50, "label": "low"}]}
    assert evaluate_branch(config) == "default"


@pytest.mark.parametrize(
    "config, label",
    [
        ({"type": "score_range", "ranges": None}, "default"),
        ({"type": "score_range", "ranges": {"low": [0, 50]}}, "default"),
        ({"type": "lead_grade", "grades": {"default": "A", "B": None}}, "A"),
        ({"type": "lead_grade", "grades": None}, "default"),
        ({"type": "lead_grade", "grades": {"default": 7}}, "default"),
        ({"type": "split_condition", "field": None, "operator": "eq"}, "no"),
    ],
)
def test_free_form_config_still_yields_a_label(config, label):
    assert evaluate_branch(config) == label


def test_unreadable_weighted_split_takes_default_branch():
    assert evaluate_branch({"type": "split_random", "branches": []}) == "default"
    assert evaluate_branch({"type": "split_random", "branches": "a,b"}) == "default"


@pytest.mark.parametrize("config", [{}, {"type": "mystery"}, {"type": 42}])
def test_unrecognized_branch_says_yes(config):
    assert evaluate_branch(config) == "yes"


def test_split_condition_uses_contact_fields():
    config = {"type": "split_condition", "field": "company.size", "operator": "gte", "value": 50}
    big = BranchContext(contact={"company": {"size": 120}})
    small = BranchContext(contact={"company": {"size": 10}})
    unknown = BranchContext(contact={})

    assert evaluate_branch(config, big) == "yes"
    assert evaluate_branch(config, small) == "no"
    assert evaluate_branch(config, unknown) == "no"


@pytest.mark.parametrize(
    "operator, actual, expected, matched",
    [
        ("eq", "NL", "NL", True),
        ("equals", "NL", "DE", False),
        ("neq", "NL", "DE", True),
        ("gt", 5, 3, True),
        ("lt", "5", 10, False),
        ("contains", "acme corp", "corp", True),
        ("starts_with", "acme corp", "acme", True),
        ("ends_with", "acme corp", "acme", False),
        ("in", "NL", ["NL", "BE"], True),
        ("not_in", "NL", ["NL", "BE"], False),
        ("is_set", "x", None, True),
        ("is_not_set", None, None, True),
        ("matches_regex", "x", "x", False),
    ],
)
def test_evaluate_condition(operator, actual, expected, matched):
    assert evaluate_condition("field", operator, expected, {"field": actual}) is matched


def test_weighted_split_is_deterministic_per_execution():
    config = {
        "type": "split_random",
        "branches": [{"label": "a", "percentage": 50}, {"label": "b", "percentage": 50}],
    }
    context = BranchContext(execution_id="exec-1", step_id="split-1")
    assert len({evaluate_branch(config, context) for _ in range(10)}) == 1


def test_weighted_split_roughly_follows_weights():
    branches = [WeightedBranch(label="a", percentage=80), WeightedBranch(label="b", percentage=20)]
    counts = Counter(pick_weighted(branches, f"exec-{i}:split") for i in range(2000))
    assert 0.7 < counts["a"] / 2000 < 0.9


def test_weighted_split_with_zero_weights_picks_first():
    branches = [WeightedBranch(label="a", percentage=0), WeightedBranch(label="b", percentage=0)]
    assert pick_weighted(branches, "seed") == "a"


def test_split_condition_without_a_match_says_no():
    config = {"type": "split_condition", "field": "country", "operator": "eq", "value": "US"}
    assert evaluate_branch(config, BranchContext(contact={"country": "FR"})) == "no"


def test_field_condition_is_read_as_split_condition():
    config = {"type": "field_condition", "field": "country", "operator": "eq", "value": "US"}
    assert evaluate_branch(config, BranchContext(contact={"country": "US"})) == "yes"
    assert isinstance(parse_branch(config), SplitConditionBranch)
