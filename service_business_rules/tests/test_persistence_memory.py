"""
Unit tests for the in-memory rule and execution log stores.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_business_rules.app.persistence.base import LogFilters
from service_business_rules.app.persistence.memory import InMemoryExecutionLogStore, InMemoryRuleStore
from service_business_rules.app.rules.models import ExecutionLog, Rule
from shared.test_helpers import create_rule_data

BASE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_log(rule_id="rule-1", school_id="school-1", success=True, minutes=0,
             table="tasks", error=None, elapsed=10.0, action_type="log_event"):
    return ExecutionLog(
        id=f"log-{rule_id}-{minutes}",
        business_rule_id=rule_id,
        school_id=school_id,
        trigger_event="record_updated",
        target_table=table,
        target_record_id="task-1",
        before_values=None,
        after_values={"id": "task-1"},
        action_details={"state": "COMPLETED" if success else "FAILED", "actions": [{"type": action_type}]},
        success=success,
        error_message=error,
        execution_time_ms=elapsed,
        executed_at=BASE + timedelta(minutes=minutes),
    )


class TestInMemoryRuleStore:
    """Test cases for InMemoryRuleStore."""

    @pytest.fixture
    def store(self):
        return InMemoryRuleStore()

    @pytest.mark.asyncio
    async def test_list_active_rules_scopes_by_tenant_table_and_status(self, store):
        tasks_rule = await store.save_rule(Rule(**create_rule_data()))
        tick_rule = await store.save_rule(Rule(**create_rule_data(trigger_type="time_based", trigger_table=None)))
        await store.save_rule(Rule(**create_rule_data(trigger_table="cadets")))
        await store.save_rule(Rule(**create_rule_data(is_active=False)))
        await store.save_rule(Rule(**create_rule_data(school_id="school-2")))

        rules = await store.list_active_rules("school-1", "tasks")

        assert [r.id for r in rules] == [tasks_rule.id, tick_rule.id]
        assert len(await store.list_active_rules("school-1")) == 3

    @pytest.mark.asyncio
    async def test_returned_rules_are_copies(self, store):
        rule = await store.save_rule(Rule(**create_rule_data()))

        loaded = await store.get_rule("school-1", rule.id)
        loaded.name = "changed"
        loaded.trigger_conditions.append({"conditions": []})

        again = await store.get_rule("school-1", rule.id)
        assert again.name == "Test rule"
        assert again.trigger_conditions == []

    @pytest.mark.asyncio
    async def test_get_rule_is_tenant_scoped(self, store):
        rule = await store.save_rule(Rule(**create_rule_data()))
        assert await store.get_rule("school-2", rule.id) is None

    @pytest.mark.asyncio
    async def test_touch_last_executed_only_moves_forward(self, store):
        rule = await store.save_rule(Rule(**create_rule_data()))

        await store.touch_last_executed("school-1", rule.id, BASE + timedelta(minutes=5))
        await store.touch_last_executed("school-1", rule.id, BASE)
        await store.touch_last_executed("school-2", rule.id, BASE + timedelta(hours=1))

        assert (await store.get_rule("school-1", rule.id)).last_executed == BASE + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_set_active(self, store):
        rule = await store.save_rule(Rule(**create_rule_data()))

        updated = await store.set_active("school-1", rule.id, False)

        assert updated.is_active is False
        assert await store.list_active_rules("school-1", "tasks") == []
        assert await store.set_active("school-1", "missing", True) is None


class TestInMemoryExecutionLogStore:
    """Test cases for InMemoryExecutionLogStore."""

    @pytest.fixture
    def store(self):
        return InMemoryExecutionLogStore()

    @pytest.mark.asyncio
    async def test_list_logs_newest_first_and_tenant_scoped(self, store):
        await store.append(make_log(minutes=1))
        await store.append(make_log(minutes=3))
        await store.append(make_log(minutes=2))
        await store.append(make_log(school_id="school-2", minutes=4))

        logs = await store.list_logs("school-1")

        assert [log.executed_at.minute for log in logs] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_filters(self, store):
        await store.append(make_log(rule_id="rule-1", minutes=1))
        await store.append(make_log(rule_id="rule-2", minutes=2, success=False,
                                    error="action[0] send_email: rejected", action_type="send_email"))
        await store.append(make_log(rule_id="rule-2", minutes=3, table="cadets"))

        assert len(await store.list_logs("school-1", LogFilters(rule_id="rule-2"))) == 2
        assert len(await store.list_logs("school-1", LogFilters(table="cadets"))) == 1
        failed = await store.list_logs("school-1", LogFilters(success=False))
        assert [log.business_rule_id for log in failed] == ["rule-2"]
        assert len(await store.list_logs("school-1", LogFilters(search="REJECTED"))) == 1
        assert len(await store.list_logs("school-1", LogFilters(search="send_email"))) == 1

    @pytest.mark.asyncio
    async def test_pagination(self, store):
        for minute in range(5):
            await store.append(make_log(minutes=minute))

        page = await store.list_logs("school-1", LogFilters(limit=2, offset=1))

        assert [log.executed_at.minute for log in page] == [3, 2]

    @pytest.mark.asyncio
    async def test_execution_stats(self, store):
        await store.append(make_log(minutes=1, elapsed=10.0))
        await store.append(make_log(minutes=2, elapsed=20.0))
        await store.append(make_log(minutes=3, elapsed=30.0, success=False))

        stats = await store.execution_stats("school-1")

        assert stats.total_executions == 3
        assert stats.successful_executions == 2
        assert stats.failed_executions == 1
        assert stats.success_rate == 66.67
        assert stats.average_execution_time_ms == 20.0

    @pytest.mark.asyncio
    async def test_execution_stats_empty(self, store):
        stats = await store.execution_stats("school-1", rule_id="rule-1")

        assert stats.total_executions == 0
        assert stats.success_rate == 0.0
        assert stats.average_execution_time_ms is None
