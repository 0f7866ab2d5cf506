"""
In-process stores for tests and local runs.
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional

from shared.logging import get_logger
from ..rules.models import ExecutionLog, Rule
from .base import ExecutionLogStore, ExecutionStats, LogFilters, RuleStore


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class InMemoryRuleStore(RuleStore):
    """Rules kept in a dict; callers always receive copies."""

    def __init__(self):
        self.logger = get_logger("business_rules.persistence.memory")
        self._rules: Dict[str, Rule] = {}
        self._lock = asyncio.Lock()

    async def list_active_rules(self, tenant_id: str, table: Optional[str] = None) -> List[Rule]:
        async with self._lock:
            rules = [
                copy.deepcopy(rule) for rule in self._rules.values()
                if rule.school_id == tenant_id and rule.is_active
                and (table is None or rule.trigger_table in (table, None))
            ]
        return sorted(rules, key=lambda r: r.sort_key)

    async def touch_last_executed(self, tenant_id: str, rule_id: str, timestamp: datetime) -> None:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None or rule.school_id != tenant_id:
                return
            if rule.last_executed is None or _aware(rule.last_executed) < _aware(timestamp):
                rule.last_executed = timestamp

    async def save_rule(self, rule: Rule) -> Rule:
        async with self._lock:
            self._rules[rule.id] = copy.deepcopy(rule)
        self.logger.info("Rule saved", rule_id=rule.id, tenant_id=rule.school_id)
        return copy.deepcopy(rule)

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[Rule]:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None or rule.school_id != tenant_id:
                return None
            return copy.deepcopy(rule)

    async def list_rules(self, tenant_id: str) -> List[Rule]:
        async with self._lock:
            rules = [copy.deepcopy(r) for r in self._rules.values() if r.school_id == tenant_id]
        return sorted(rules, key=lambda r: r.sort_key)

    async def set_active(self, tenant_id: str, rule_id: str, is_active: bool) -> Optional[Rule]:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None or rule.school_id != tenant_id:
                return None
            rule.is_active = is_active
            return copy.deepcopy(rule)


class InMemoryExecutionLogStore(ExecutionLogStore):
    """Append-only list of logs."""

    def __init__(self):
        self._logs: List[ExecutionLog] = []
        self._lock = asyncio.Lock()

    async def append(self, log: ExecutionLog) -> str:
        async with self._lock:
            self._logs.append(copy.deepcopy(log))
        return log.id

    async def list_logs(self, tenant_id: str, filters: Optional[LogFilters] = None) -> List[ExecutionLog]:
        filters = filters or LogFilters()
        async with self._lock:
            logs = [log for log in self._logs if log.school_id == tenant_id and filters.matches(log)]
        logs.sort(key=lambda log: _aware(log.executed_at), reverse=True)
        return logs[filters.offset:filters.offset + filters.limit]

    async def execution_stats(self, tenant_id: str, rule_id: Optional[str] = None) -> ExecutionStats:
        async with self._lock:
            logs = [
                log for log in self._logs
                if log.school_id == tenant_id and (rule_id is None or log.business_rule_id == rule_id)
            ]
        if not logs:
            return ExecutionStats()

        successful = sum(1 for log in logs if log.success)
        return ExecutionStats(
            total_executions=len(logs),
            successful_executions=successful,
            failed_executions=len(logs) - successful,
            average_execution_time_ms=round(sum(log.execution_time_ms for log in logs) / len(logs), 3)
        )
