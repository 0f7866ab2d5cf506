"""
Ordered, fail-fast action dispatcher.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Sequence

from shared.errors import (
    ActionError, ActionTimeoutError, ActionValidationError, ExternalServiceError
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..adapters.data_mutation import DataMutationClient
from ..adapters.email_queue import EmailQueueClient
from ..adapters.webhook import WebhookClient
from ..rules.models import ActionContext, ActionResult, ActionType, DispatchOutcome
from .params import (
    ActionSpec, CreateRecordAction, CreateTaskAction, LogEventAction, SendEmailAction,
    UpdateRecordAction, WebhookAction, parse_action_spec, raw_parameters,
    raw_type, render_template
)


class ActionDispatcher:
    """Runs a rule's actions in declared order and stops at the first failure.

    Effects of actions that already succeeded are not rolled back; each sink
    commits its own change.
    """

    def __init__(self,
                 email_client: EmailQueueClient,
                 data_client: DataMutationClient,
                 webhook_client: Optional[WebhookClient] = None,
                 action_timeout: float = 10.0,
                 metrics: Optional[MetricsCollector] = None):
        self.email_client = email_client
        self.data_client = data_client
        self.webhook_client = webhook_client or WebhookClient(timeout=action_timeout)
        self.action_timeout = action_timeout
        self.metrics = metrics
        self.logger = get_logger("business_rules.action_dispatcher")

    async def dispatch(self, action_specs: Sequence[Any], context: ActionContext) -> DispatchOutcome:
        """Execute actions in order; the outcome holds one result per attempted action."""
        outcome = DispatchOutcome()

        for index, raw in enumerate(action_specs or []):
            action_type = raw_type(raw)
            parameters = raw_parameters(raw)
            started = time.perf_counter()

            try:
                if action_type != ActionType.LOG_EVENT.value:
                    parameters = render_template(parameters, context.record)
                action = parse_action_spec(raw, index, parameters=parameters)
                result = await asyncio.wait_for(
                    self._execute(action, parameters, context),
                    timeout=self.action_timeout
                )
            except asyncio.TimeoutError:
                error = ActionTimeoutError(
                    f"{action_type} timed out after {self.action_timeout:g}s",
                    action_index=index,
                    action_type=action_type
                )
                outcome.results.append(self._failure(index, action_type, parameters, error, started))
                break
            except ActionError as e:
                e.bind(index, action_type)
                outcome.results.append(self._failure(index, action_type, parameters, e, started))
                break
            except ExternalServiceError as e:
                error = ActionError(
                    e.message,
                    action_index=index,
                    action_type=action_type,
                    details={"cause_code": e.code, **e.details}
                )
                outcome.results.append(self._failure(index, action_type, parameters, error, started))
                break
            except Exception as e:
                self.logger.exception(
                    "Unexpected action failure",
                    action_index=index,
                    action_type=action_type
                )
                error = ActionError(
                    f"{type(e).__name__}: {e}",
                    action_index=index,
                    action_type=action_type
                )
                outcome.results.append(self._failure(index, action_type, parameters, error, started))
                break

            outcome.results.append(ActionResult(
                index=index,
                type=action_type,
                parameters=parameters,
                success=True,
                result=result,
                duration_ms=(time.perf_counter() - started) * 1000
            ))
            self._record_metric(action_type, True)

        return outcome

    async def _execute(self, action: ActionSpec, parameters: Dict[str, Any], context: ActionContext) -> Any:
        if isinstance(action, SendEmailAction):
            return await self._send_email(action, context)
        elif isinstance(action, UpdateRecordAction):
            return await self._update_record(action, context)
        elif isinstance(action, CreateRecordAction):
            return await self._create_record(action, context)
        elif isinstance(action, CreateTaskAction):
            return await self._create_task(action, context)
        elif isinstance(action, LogEventAction):
            self.logger.info("Rule log event", rule_id=context.rule_id, parameters=parameters)
            return parameters
        elif isinstance(action, WebhookAction):
            return await self._webhook(action, context)

        raise ActionValidationError(f"Unsupported action type: {action.type}")

    async def _send_email(self, action: SendEmailAction, context: ActionContext) -> Dict[str, Any]:
        params = action.parameters
        recipient = params.resolve_recipient(context.record)
        queue_id = await self.email_client.enqueue(
            tenant_id=context.tenant_id,
            template_id=params.template_id,
            recipient=recipient,
            source_table=context.target_table,
            record_id=context.target_record_id,
            rule_id=context.rule_id
        )
        return {"queue_id": queue_id, "recipient": recipient}

    async def _update_record(self, action: UpdateRecordAction, context: ActionContext) -> Dict[str, Any]:
        params = action.parameters
        table = params.table or context.target_table
        record_id = params.record_id or context.target_record_id
        if not table or not record_id:
            raise ActionValidationError(
                "update_record needs a table and record id and the event has none",
                details={"table": table, "record_id": record_id}
            )

        fields = params.resolve_fields(context.record)
        affected = await self.data_client.update(context.tenant_id, table, record_id, fields)
        return {"table": table, "record_id": record_id, "fields": fields, "affected": affected}

    async def _create_record(self, action: CreateRecordAction, context: ActionContext) -> Dict[str, Any]:
        params = action.parameters
        new_id = await self.data_client.create(context.tenant_id, params.table, dict(params.fields))
        return {"table": params.table, "record_id": new_id}

    async def _create_task(self, action: CreateTaskAction, context: ActionContext) -> Dict[str, Any]:
        fields = action.parameters.resolve_fields(context.record)
        new_id = await self.data_client.create(context.tenant_id, "tasks", fields)
        return {"table": "tasks", "record_id": new_id, "assigned_to": fields.get("assigned_to")}

    async def _webhook(self, action: WebhookAction, context: ActionContext) -> Dict[str, Any]:
        params = action.parameters
        payload = params.payload
        if payload is None:
            payload = {
                "tenant_id": context.tenant_id,
                "rule_id": context.rule_id,
                "event_id": context.event_id,
                "table": context.target_table,
                "record_id": context.target_record_id,
                "before": context.before_values,
                "after": context.after_values,
            }
        status_code = await self.webhook_client.send(
            params.url,
            method=params.method,
            payload=payload,
            headers=params.headers
        )
        return {"status_code": status_code}

    def _failure(self, index: int, action_type: str, parameters: Dict[str, Any],
                 error: ActionError, started: float) -> ActionResult:
        self.logger.warning(
            "Action failed",
            action_index=index,
            action_type=action_type,
            error_code=error.code,
            error=error.message
        )
        self._record_metric(action_type, False)
        return ActionResult(
            index=index,
            type=action_type,
            parameters=parameters,
            success=False,
            error=error.message,
            error_code=error.code,
            duration_ms=(time.perf_counter() - started) * 1000
        )

    def _record_metric(self, action_type: str, success: bool):
        if self.metrics:
            self.metrics.record_action(action_type, success)
