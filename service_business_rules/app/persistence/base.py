"""
Store interfaces for rules and execution logs.

Every call takes the tenant id explicitly; implementations never read it
from ambient context. Failures surface as StoreError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..rules.models import ExecutionLog, Rule


@dataclass
class LogFilters:
    """Filters offered by the execution log viewer."""
    rule_id: Optional[str] = None
    table: Optional[str] = None
    success: Optional[bool] = None
    search: Optional[str] = None
    limit: int = 100
    offset: int = 0

    def matches(self, log: ExecutionLog) -> bool:
        if self.rule_id and log.business_rule_id != self.rule_id:
            return False
        if self.table and log.target_table != self.table:
            return False
        if self.success is not None and log.success != self.success:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = [log.target_table or "", log.trigger_event, log.error_message or ""]
            haystack.extend(
                str(action.get("type", ""))
                for action in log.action_details.get("actions", [])
                if isinstance(action, dict)
            )
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


@dataclass
class ExecutionStats:
    """Aggregates shown on the log viewer's summary cards."""
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time_ms: Optional[float] = None

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return round(self.successful_executions / self.total_executions * 100, 2)


class RuleStore(ABC):
    """Persistence for rule definitions."""

    async def start(self):
        """Open connections; no-op by default."""

    async def stop(self):
        """Release connections; no-op by default."""

    @abstractmethod
    async def list_active_rules(self, tenant_id: str, table: Optional[str] = None) -> List[Rule]:
        """Active rules of a tenant.

        With ``table`` set, returns rules watching that table plus rules with no
        trigger table (time-based or misconfigured) so the matcher can judge them.
        """

    @abstractmethod
    async def touch_last_executed(self, tenant_id: str, rule_id: str, timestamp: datetime) -> None:
        """Move ``last_executed`` forward; an older timestamp never overwrites a newer one."""

    @abstractmethod
    async def save_rule(self, rule: Rule) -> Rule:
        """Insert or replace a rule."""

    @abstractmethod
    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[Rule]:
        pass

    @abstractmethod
    async def list_rules(self, tenant_id: str) -> List[Rule]:
        """All rules of a tenant in creation order."""

    @abstractmethod
    async def set_active(self, tenant_id: str, rule_id: str, is_active: bool) -> Optional[Rule]:
        """Activate or deactivate a rule; None if it does not exist."""


class ExecutionLogStore(ABC):
    """Append-only persistence for execution logs."""

    async def start(self):
        """Open connections; no-op by default."""

    async def stop(self):
        """Release connections; no-op by default."""

    @abstractmethod
    async def append(self, log: ExecutionLog) -> str:
        """Persist a log row and return its id."""

    @abstractmethod
    async def list_logs(self, tenant_id: str, filters: Optional[LogFilters] = None) -> List[ExecutionLog]:
        """Logs of a tenant, newest first."""

    @abstractmethod
    async def execution_stats(self, tenant_id: str, rule_id: Optional[str] = None) -> ExecutionStats:
        pass
