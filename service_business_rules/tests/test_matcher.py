"""
Unit tests for the trigger matcher.
"""

import pytest

from service_business_rules.app.rules.matcher import TriggerMatcher
from service_business_rules.app.rules.models import ChangeEvent, EventOperation, Rule
from shared.errors import ConfigurationError, MatchingError
from shared.test_helpers import create_condition, create_rule_data, create_task_completed_rule_data


def updated_task(status, tenant_id="school-1"):
    return ChangeEvent(
        table="tasks",
        operation=EventOperation.UPDATED,
        tenant_id=tenant_id,
        old_row={"id": "task-1", "status": "pending"},
        new_row={"id": "task-1", "status": status},
    )


class TestTriggerMatcher:
    """Test cases for TriggerMatcher."""

    @pytest.fixture
    def matcher(self):
        return TriggerMatcher()

    @pytest.fixture
    def completed_rule(self):
        return Rule(**create_task_completed_rule_data())

    def test_matches_rule_on_table_type_and_conditions(self, matcher, completed_rule):
        assert matcher.match(updated_task("completed"), [completed_rule]) == [completed_rule]

    def test_conditions_rejecting_event(self, matcher, completed_rule):
        assert matcher.match(updated_task("pending"), [completed_rule]) == []

    def test_inactive_rule_never_matches(self, matcher):
        rule = Rule(**create_task_completed_rule_data(is_active=False))
        assert matcher.match(updated_task("completed"), [rule]) == []

    def test_other_tenant_rule_never_matches(self, matcher):
        rule = Rule(**create_task_completed_rule_data(school_id="school-2"))
        assert matcher.match(updated_task("completed"), [rule]) == []

    def test_table_and_operation_must_correspond(self, matcher):
        created_rule = Rule(**create_rule_data(trigger_type="record_created"))
        other_table_rule = Rule(**create_rule_data(trigger_table="cadets"))
        event = updated_task("completed")

        assert matcher.match(event, [created_rule, other_table_rule]) == []

    def test_deleted_events_evaluate_old_row(self, matcher):
        rule = Rule(**create_rule_data(
            trigger_type="record_deleted",
            condition_groups=[[create_condition("status", "equals", "archived")]]
        ))
        event = ChangeEvent(
            table="tasks",
            operation=EventOperation.DELETED,
            tenant_id="school-1",
            old_row={"id": "task-9", "status": "archived"},
        )
        assert matcher.match(event, [rule]) == [rule]

    def test_updated_events_evaluate_new_row(self, matcher):
        rule = Rule(**create_rule_data(
            condition_groups=[[create_condition("status", "equals", "pending")]]
        ))
        # old_row has status "pending", new_row does not
        assert matcher.match(updated_task("completed"), [rule]) == []

    def test_time_based_rules_ignore_table(self, matcher):
        rule = Rule(**create_rule_data(trigger_type="time_based", trigger_table=None))
        event = ChangeEvent.time_based("school-1")
        assert matcher.match(event, [rule]) == [rule]
        assert matcher.match(updated_task("completed"), [rule]) == []

    def test_candidates_are_ordered_by_creation(self, matcher):
        first = Rule(**create_task_completed_rule_data())
        second = Rule(**create_task_completed_rule_data())
        third = Rule(**create_task_completed_rule_data())

        matched = matcher.match(updated_task("completed"), [third, first, second])
        assert [r.id for r in matched] == [first.id, second.id, third.id]

    def test_malformed_rule_is_isolated(self, matcher):
        broken = Rule(**create_rule_data(
            condition_groups=[[create_condition("status", "resembles", "completed")]]
        ))
        healthy = Rule(**create_task_completed_rule_data())

        result = matcher.match_with_failures(updated_task("completed"), [broken, healthy])

        assert result.candidates == [healthy]
        assert len(result.failures) == 1
        assert result.failures[0].rule is broken
        assert isinstance(result.failures[0].error, MatchingError)
        assert result.failures[0].error.details["rule_id"] == broken.id

    def test_record_trigger_without_table_is_configuration_error(self, matcher):
        rule = Rule(**create_rule_data(trigger_table=None))
        result = matcher.match_with_failures(updated_task("completed"), [rule])

        assert result.candidates == []
        assert isinstance(result.failures[0].error, ConfigurationError)
        assert result.failures[0].error.code == "CONFIGURATION_ERROR"

    def test_unknown_trigger_type_is_configuration_error(self, matcher):
        rule = Rule(**create_rule_data(trigger_type="record_archived"))
        result = matcher.match_with_failures(updated_task("completed"), [rule])

        assert isinstance(result.failures[0].error, ConfigurationError)

    def test_unexpected_evaluation_error_is_isolated(self, matcher):
        broken = Rule(**create_rule_data(field_types=["not", "a", "mapping"]))
        healthy = Rule(**create_task_completed_rule_data())

        result = matcher.match_with_failures(updated_task("completed"), [broken, healthy])

        assert result.candidates == [healthy]
        error = result.failures[0].error
        assert isinstance(error, MatchingError)
        assert error.details["rule_id"] == broken.id
        assert error.details["cause"] == "ValueError"

    def test_non_string_field_type_is_ignored(self, matcher):
        rule = Rule(**create_task_completed_rule_data(field_types={"status": 5}))
        assert matcher.match(updated_task("completed"), [rule]) == [rule]

    def test_out_of_range_timestamp_does_not_raise(self, matcher):
        rule = Rule(**create_rule_data(
            condition_groups=[[create_condition("due_at", "greater_than", "2024-01-01T00:00:00Z")]],
            field_types={"due_at": "timestamp with time zone"}
        ))
        event = ChangeEvent(
            table="tasks",
            operation=EventOperation.UPDATED,
            tenant_id="school-1",
            new_row={"id": "task-1", "due_at": "0001-01-01T00:00:00+05:00"},
        )

        result = matcher.match_with_failures(event, [rule])

        assert result.failures == []

    def test_schema_drift_is_not_an_error(self, matcher):
        rule = Rule(**create_rule_data(
            condition_groups=[[create_condition("removed_column", "is_null")]]
        ))
        result = matcher.match_with_failures(updated_task("completed"), [rule])

        assert result.failures == []
        assert result.candidates == [rule]
