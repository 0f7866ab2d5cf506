"""
Rule execution orchestrator.

For one change event: list the tenant's active rules, match them, dispatch
the actions of every candidate and write exactly one execution log per
firing. Firings of different rules run concurrently; firings of the same rule
are serialized.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from shared.errors import MatchingError, StoreError
from shared.logging import get_logger, set_event_context, set_rule_context
from shared.metrics import MetricsCollector
from ..actions.dispatcher import ActionDispatcher
from ..persistence.base import ExecutionLogStore, RuleStore
from ..rules.matcher import RuleMatch, TriggerMatcher
from ..rules.models import (
    ActionContext, ChangeEvent, DispatchOutcome, EventProcessingReport, ExecutionLog,
    FiringReport, FiringState, Rule, TRIGGER_FOR_OPERATION, EventOperation, utcnow
)


@dataclass
class _RuleLock:
    """A rule's lock and the number of firings holding or awaiting it."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RuleExecutionOrchestrator:
    """Coordinates matcher, dispatcher and the two stores for each event."""

    def __init__(self,
                 rule_store: RuleStore,
                 log_store: ExecutionLogStore,
                 dispatcher: ActionDispatcher,
                 matcher: Optional[TriggerMatcher] = None,
                 store_timeout: float = 5.0,
                 parallel_rules: bool = True,
                 metrics: Optional[MetricsCollector] = None):
        self.rule_store = rule_store
        self.log_store = log_store
        self.dispatcher = dispatcher
        self.matcher = matcher or TriggerMatcher()
        self.store_timeout = store_timeout
        self.parallel_rules = parallel_rules
        self.metrics = metrics
        self.logger = get_logger("business_rules.orchestrator")
        self._rule_locks: Dict[str, _RuleLock] = {}

    async def process_event(self, event: ChangeEvent) -> EventProcessingReport:
        """Fire every rule the event activates.

        Raises StoreError when a store is unavailable so the caller can
        redeliver the event. Rule-level failures never raise; they become
        FAILED log rows.
        """
        set_event_context(tenant_id=event.tenant_id, event_id=event.event_id)
        if self.metrics:
            self.metrics.record_change_event(EventOperation(event.operation).value)
        self.logger.info(
            "Change event received",
            state=FiringState.EVENT_RECEIVED.value,
            table=event.table,
            operation=EventOperation(event.operation).value,
            record_id=event.record_id
        )

        rules = await self._store_call(
            "rule_store", self.rule_store.list_active_rules(event.tenant_id, event.table)
        )
        report = EventProcessingReport(
            event_id=event.event_id,
            tenant_id=event.tenant_id,
            rules_considered=len(rules)
        )

        result = self.matcher.match_with_failures(event, rules)
        self.logger.info(
            "Rules matched",
            state=FiringState.RULES_MATCHED.value,
            considered=len(rules),
            candidates=len(result.candidates),
            failures=len(result.failures)
        )
        if not result.matches:
            return report

        if self.parallel_rules:
            # Tasks start in firing order.
            tasks = [
                asyncio.ensure_future(self._fire(match, event))
                for match in result.matches
            ]
            outcomes = await asyncio.gather(*[asyncio.shield(t) for t in tasks], return_exceptions=True)
        else:
            outcomes = []
            for match in result.matches:
                # A started firing finishes and logs even if the caller is cancelled.
                task = asyncio.ensure_future(self._fire(match, event))
                try:
                    outcomes.append(await asyncio.shield(task))
                except StoreError as e:
                    outcomes.append(e)

        store_error: Optional[BaseException] = None
        for outcome in outcomes:
            if isinstance(outcome, FiringReport):
                report.firings.append(outcome)
            elif isinstance(outcome, BaseException) and store_error is None:
                store_error = outcome

        if store_error is not None:
            raise store_error
        return report

    @asynccontextmanager
    async def _rule_lock(self, rule_id: str):
        """Serialize firings of one rule; the entry is dropped once nobody uses it."""
        entry = self._rule_locks.get(rule_id)
        if entry is None:
            entry = self._rule_locks[rule_id] = _RuleLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._rule_locks[rule_id]

    async def _fire(self, match: RuleMatch, event: ChangeEvent) -> FiringReport:
        """One firing: dispatch (unless matching failed), log, touch last_executed."""
        rule = match.rule
        async with self._rule_lock(rule.id):
            set_rule_context(rule.id)
            try:
                if match.failed:
                    log = self._matching_failure_log(rule, event, match.error)
                else:
                    log = await self._dispatch(rule, event)

                await self._store_call("execution_log_store", self.log_store.append(log))
                await self._store_call(
                    "rule_store",
                    self.rule_store.touch_last_executed(rule.school_id, rule.id, log.executed_at)
                )
            finally:
                set_rule_context(None)

        state = FiringState(log.action_details["state"])
        if self.metrics:
            self.metrics.record_firing(state.value, log.execution_time_ms)

        log_method = self.logger.info if log.success else self.logger.warning
        log_method(
            "Rule firing finished",
            rule_id=rule.id,
            state=state.value,
            log_id=log.id,
            execution_time_ms=log.execution_time_ms,
            error=log.error_message
        )
        return FiringReport(rule_id=rule.id, state=state, log_id=log.id, error_message=log.error_message)

    async def _dispatch(self, rule: Rule, event: ChangeEvent) -> ExecutionLog:
        context = ActionContext.for_firing(rule, event)
        self.logger.debug(
            "Dispatching actions",
            state=FiringState.ACTIONS_DISPATCHED.value,
            rule_id=rule.id,
            actions=len(rule.actions or [])
        )
        started = time.perf_counter()
        try:
            outcome = await self.dispatcher.dispatch(rule.actions, context)
            unexpected = None
        except Exception as e:
            # The dispatcher maps action failures itself; this keeps the log row.
            self.logger.exception("Dispatcher failed unexpectedly", rule_id=rule.id)
            outcome = DispatchOutcome()
            unexpected = f"{type(e).__name__}: {e}"
        elapsed_ms = (time.perf_counter() - started) * 1000

        failed = outcome.failed_result
        success = unexpected is None and failed is None
        action_details: Dict[str, Any] = {
            "state": (FiringState.COMPLETED if success else FiringState.FAILED).value,
            "failed_stage": None if success else FiringState.ACTIONS_DISPATCHED.value,
            "failed_action_index": failed.index if failed else None,
            "event_id": event.event_id,
            "actions": [r.to_dict() for r in outcome.results],
        }
        if failed is not None:
            error_message = f"action[{failed.index}] {failed.type}: {failed.error}"
            action_details["error_code"] = failed.error_code
        else:
            error_message = unexpected
        if error_message:
            action_details["error"] = error_message

        return self._build_log(rule, event, action_details, success, error_message, elapsed_ms)

    def _matching_failure_log(self, rule: Rule, event: ChangeEvent, error: MatchingError) -> ExecutionLog:
        error_message = f"{error.code}: {error.message}"
        action_details = {
            "state": FiringState.FAILED.value,
            "failed_stage": FiringState.CONDITIONS_EVALUATED.value,
            "failed_action_index": None,
            "event_id": event.event_id,
            "actions": [],
            "error": error_message,
            "error_code": error.code,
            "error_details": error.details,
        }
        return self._build_log(
            rule, event, action_details,
            success=False,
            error_message=error_message,
            elapsed_ms=0.0
        )

    def _build_log(self, rule: Rule, event: ChangeEvent, action_details: Dict[str, Any],
                   success: bool, error_message: Optional[str], elapsed_ms: float) -> ExecutionLog:
        return ExecutionLog(
            id=str(uuid.uuid4()),
            business_rule_id=rule.id,
            school_id=event.tenant_id,
            trigger_event=TRIGGER_FOR_OPERATION[EventOperation(event.operation)].value,
            target_table=event.table,
            target_record_id=event.record_id,
            before_values=event.old_row,
            after_values=event.new_row,
            action_details=action_details,
            success=success,
            error_message=error_message,
            execution_time_ms=round(elapsed_ms, 3),
            executed_at=utcnow(),
        )

    async def _store_call(self, store: str, call) -> Any:
        """Await a store coroutine with the store timeout; every failure is a StoreError."""
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout)
        except StoreError:
            raise
        except asyncio.TimeoutError as e:
            raise StoreError(store, f"timed out after {self.store_timeout:g}s") from e
        except Exception as e:
            self.logger.error("Store call failed", store=store, error=str(e))
            raise StoreError(store, f"{type(e).__name__}: {e}") from e
