"""
Unit tests for the condition evaluator.
"""

import itertools

import pytest

from service_business_rules.app.rules.conditions import ConditionEvaluator, evaluate, is_temporal_type, to_instant
from service_business_rules.app.rules.models import ConditionOperator
from shared.errors import MatchingError


def cond(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


class TestGroupLogic:
    """AND within a group, OR across groups."""

    def test_empty_groups_match_unconditionally(self):
        assert evaluate([], {"status": "pending"}) is True
        assert evaluate(None, {}) is True

    def test_groups_without_conditions_are_ignored(self):
        assert evaluate([{"conditions": []}], {"status": "x"}) is True
        groups = [{"conditions": []}, {"conditions": [cond("status", "equals", "done")]}]
        assert evaluate(groups, {"status": "open"}) is False
        assert evaluate(groups, {"status": "done"}) is True

    def test_accepts_bare_lists_and_condition_group_objects(self):
        record = {"status": "completed"}
        assert evaluate([[cond("status", "equals", "completed")]], record) is True
        assert evaluate([{"conditions": [cond("status", "equals", "completed")]}], record) is True

    def test_truth_table_of_two_groups(self):
        """[[A AND B], [C]] is true iff (A and B) or C."""
        groups = [
            [cond("a", "equals", "yes"), cond("b", "equals", "yes")],
            [cond("c", "equals", "yes")],
        ]
        for a, b, c in itertools.product([True, False], repeat=3):
            record = {
                "a": "yes" if a else "no",
                "b": "yes" if b else "no",
                "c": "yes" if c else "no",
            }
            assert evaluate(groups, record) is ((a and b) or c), (a, b, c)

    def test_evaluation_is_repeatable(self):
        groups = [[cond("score", "greater_than", "10")], [cond("tags", "contains", "x")]]
        record = {"score": 11, "tags": ["y"]}
        results = {evaluate(groups, record) for _ in range(5)}
        assert results == {True}

    def test_malformed_condition_raises_matching_error(self):
        with pytest.raises(MatchingError):
            evaluate([[cond("status", "sounds_like", "done")]], {"status": "done"})
        with pytest.raises(MatchingError):
            evaluate([["not-a-condition"]], {})
        with pytest.raises(MatchingError):
            evaluate([[{"operator": "equals", "value": 1}]], {})

    def test_malformed_later_group_raises_even_if_earlier_group_matches(self):
        groups = [[cond("status", "equals", "done")], [cond("status", "bogus", "x")]]
        with pytest.raises(MatchingError):
            evaluate(groups, {"status": "done"})

    def test_flat_condition_list_is_rejected(self):
        with pytest.raises(MatchingError):
            evaluate([cond("status", "equals", "done")], {"status": "done"})


class TestNullSafety:
    """Missing fields behave as null and never raise."""

    @pytest.mark.parametrize("operator", [op.value for op in ConditionOperator])
    def test_missing_field_never_raises(self, operator):
        evaluate([[cond("missing", operator, "x")]], {"other": 1})

    def test_missing_field_is_null(self):
        record = {"name": "Alpha"}
        assert evaluate([[cond("missing", "is_null")]], record) is True
        assert evaluate([[cond("missing", "is_not_null")]], record) is False

    def test_explicit_none_is_null(self):
        assert evaluate([[cond("due", "is_null")]], {"due": None}) is True

    def test_comparisons_with_null_are_false(self):
        record = {"score": None}
        assert evaluate([[cond("score", "greater_than", 1)]], record) is False
        assert evaluate([[cond("score", "less_than", 1)]], record) is False
        assert evaluate([[cond("score", "contains", "1")]], record) is False
        assert evaluate([[cond("score", "equals", None)]], record) is True
        assert evaluate([[cond("score", "not_equals", "1")]], record) is True


class TestOperators:
    """Operator semantics and coercion."""

    def test_equals_string(self):
        assert evaluate([[cond("status", "equals", "completed")]], {"status": "completed"}) is True
        assert evaluate([[cond("status", "equals", "completed")]], {"status": "pending"}) is False

    def test_not_equals(self):
        assert evaluate([[cond("status", "not_equals", "completed")]], {"status": "pending"}) is True

    def test_equals_numeric_against_string_value(self):
        assert evaluate([[cond("grade", "equals", "10")]], {"grade": 10}) is True
        assert evaluate([[cond("grade", "equals", "10.0")]], {"grade": 10}) is True
        assert evaluate([[cond("grade", "equals", "ten")]], {"grade": 10}) is False

    def test_equals_boolean_against_string_value(self):
        assert evaluate([[cond("active", "equals", "true")]], {"active": True}) is True
        assert evaluate([[cond("active", "equals", "false")]], {"active": True}) is False
        assert evaluate([[cond("active", "equals", True)]], {"active": "TRUE"}) is True

    def test_greater_and_less_than_numeric(self):
        record = {"score": "9"}
        assert evaluate([[cond("score", "greater_than", "10")]], record) is False
        assert evaluate([[cond("score", "less_than", "10")]], record) is True
        assert evaluate([[cond("score", "greater_than", 8.5)]], record) is True

    def test_greater_than_falls_back_to_lexicographic(self):
        assert evaluate([[cond("name", "greater_than", "alpha")]], {"name": "bravo"}) is True
        assert evaluate([[cond("name", "less_than", "alpha")]], {"name": "bravo"}) is False

    def test_contains_substring_sequence_and_mapping(self):
        assert evaluate([[cond("title", "contains", "drill")]], {"title": "Morning drill"}) is True
        assert evaluate([[cond("tags", "contains", "urgent")]], {"tags": ["urgent", "x"]}) is True
        assert evaluate([[cond("tags", "contains", "2")]], {"tags": [1, 2]}) is True
        assert evaluate([[cond("meta", "contains", "k")]], {"meta": {"k": 1}}) is True
        assert evaluate([[cond("tags", "contains", "none")]], {"tags": ["a"]}) is False

    def test_starts_and_ends_with(self):
        record = {"email": "cadet@school.org"}
        assert evaluate([[cond("email", "starts_with", "cadet")]], record) is True
        assert evaluate([[cond("email", "ends_with", ".org")]], record) is True
        assert evaluate([[cond("email", "ends_with", ".com")]], record) is False


class TestDateFields:
    """Date/time fields compare as instants when the field type says so."""

    def test_equals_normalizes_instants_for_timestamp_fields(self):
        evaluator = ConditionEvaluator({"due_date": "timestamp with time zone"})
        groups = [[cond("due_date", "equals", "2024-05-01T12:00:00Z")]]
        assert evaluator.evaluate(groups, {"due_date": "2024-05-01T14:00:00+02:00"}) is True

    def test_date_only_is_midnight_utc(self):
        evaluator = ConditionEvaluator({"due_date": "date"})
        groups = [[cond("due_date", "equals", "2024-05-01T00:00:00Z")]]
        assert evaluator.evaluate(groups, {"due_date": "2024-05-01"}) is True

    def test_without_field_type_strings_compare_verbatim(self):
        groups = [[cond("due_date", "equals", "2024-05-01T12:00:00Z")]]
        assert evaluate(groups, {"due_date": "2024-05-01T14:00:00+02:00"}) is False

    def test_greater_than_on_dates(self):
        evaluator = ConditionEvaluator({"due_date": "date"})
        groups = [[cond("due_date", "greater_than", "2024-01-31")]]
        assert evaluator.evaluate(groups, {"due_date": "2024-02-01"}) is True
        assert evaluator.evaluate(groups, {"due_date": "2024-01-01"}) is False

    def test_to_instant_rejects_non_dates(self):
        assert to_instant("not a date") is None
        assert to_instant(42) is None
        assert to_instant("2024-05-01").isoformat() == "2024-05-01T00:00:00+00:00"

    def test_to_instant_out_of_range_after_offset_is_none(self):
        assert to_instant("0001-01-01T00:00:00+05:00") is None
        assert to_instant("9999-12-31T23:59:59-05:00") is None

    def test_non_string_field_types_are_not_temporal(self):
        assert is_temporal_type(5) is False
        assert is_temporal_type(None) is False
        evaluator = ConditionEvaluator({"status": 5})
        assert evaluator.evaluate([[cond("status", "equals", "done")]], {"status": "done"}) is True
