"""
Business Rule Engine service.
"""

from typing import Dict, List, Optional

from fastapi import HTTPException, Query

from shared.base_service import BaseService
from shared.errors import ValidationError

from .actions.dispatcher import ActionDispatcher
from .adapters.data_mutation import DataMutationClient
from .adapters.email_queue import EmailQueueClient
from .adapters.webhook import WebhookClient
from .engine.orchestrator import RuleExecutionOrchestrator
from .ingest.consumer import ChangeEventConsumer
from .persistence.base import LogFilters
from .persistence.memory import InMemoryExecutionLogStore, InMemoryRuleStore
from .persistence.postgres import PostgresExecutionLogStore, PostgresPool, PostgresRuleStore
from .rules.models import (
    ChangeEventRequest, EventProcessingResponse, ExecutionStatsResponse,
    RuleCreateRequest, RuleResponse
)


class BusinessRulesService(BaseService):
    """Business rule engine service implementation."""

    def __init__(self, **config_overrides):
        super().__init__("business_rules", 8030, **config_overrides)

        self.pg_pool: Optional[PostgresPool] = None
        self.rule_store, self.log_store = self._create_stores()

        self.email_client = EmailQueueClient(
            self.config.email_queue_url, timeout=self.config.action_timeout_seconds
        )
        self.data_client = DataMutationClient(
            self.config.data_service_url, timeout=self.config.action_timeout_seconds
        )
        self.dispatcher = ActionDispatcher(
            email_client=self.email_client,
            data_client=self.data_client,
            webhook_client=WebhookClient(timeout=self.config.action_timeout_seconds),
            action_timeout=self.config.action_timeout_seconds,
            metrics=self.metrics
        )
        self.orchestrator = RuleExecutionOrchestrator(
            rule_store=self.rule_store,
            log_store=self.log_store,
            dispatcher=self.dispatcher,
            store_timeout=self.config.store_timeout_seconds,
            metrics=self.metrics
        )
        self.consumer: Optional[ChangeEventConsumer] = None
        if self.config.enable_consumer:
            self.consumer = ChangeEventConsumer(
                bootstrap_servers=self.config.kafka_bootstrap,
                group_id=self.config.consumer_group,
                topic=self.config.change_topic,
                orchestrator=self.orchestrator
            )

        self._setup_rule_routes()

    def _create_stores(self) -> tuple:
        backend = self.config.storage_backend.lower()
        if backend == "memory":
            return InMemoryRuleStore(), InMemoryExecutionLogStore()
        if backend == "postgres":
            self.pg_pool = PostgresPool(self.config.postgres_dsn, timeout=self.config.store_timeout_seconds)
            return PostgresRuleStore(self.pg_pool), PostgresExecutionLogStore(self.pg_pool)
        raise ValueError(f"Unknown storage backend: {self.config.storage_backend}")

    async def on_startup(self):
        await self.rule_store.start()
        await self.log_store.start()
        if self.consumer:
            await self.consumer.start()
        self.logger.info("Business rules service started", storage_backend=self.config.storage_backend)

    async def on_shutdown(self):
        if self.consumer:
            await self.consumer.stop()
        await self.rule_store.stop()
        await self.log_store.stop()
        self.logger.info("Business rules service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        if self.pg_pool is None:
            return {"storage": "memory"}
        await self.pg_pool.run("postgres", "fetchval", "SELECT 1")
        return {"postgres": "ok"}

    def _setup_rule_routes(self):
        """Set up rule engine routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "business_rules",
                "message": "Business Rule Engine",
                "version": "1.0.0",
                "capabilities": ["rule_matching", "action_dispatch", "execution_logs"]
            }

        @self.app.post("/events", response_model=EventProcessingResponse)
        async def process_event(request: ChangeEventRequest):
            """Process one change event synchronously."""
            report = await self.orchestrator.process_event(request.to_event())
            return EventProcessingResponse.from_report(report)

        @self.app.post("/tenants/{tenant_id}/rules", response_model=RuleResponse, status_code=201)
        async def create_rule(tenant_id: str, request: RuleCreateRequest):
            """Create a rule for a school."""
            try:
                rule = request.to_rule(tenant_id)
            except ValueError as e:
                raise ValidationError(str(e), details={"tenant_id": tenant_id})

            saved = await self.rule_store.save_rule(rule)
            return RuleResponse.from_rule(saved)

        @self.app.get("/tenants/{tenant_id}/rules", response_model=List[RuleResponse])
        async def list_rules(tenant_id: str):
            """List a school's rules in creation order."""
            rules = await self.rule_store.list_rules(tenant_id)
            return [RuleResponse.from_rule(rule) for rule in rules]

        @self.app.get("/tenants/{tenant_id}/rules/{rule_id}", response_model=RuleResponse)
        async def get_rule(tenant_id: str, rule_id: str):
            """Get a rule."""
            rule = await self.rule_store.get_rule(tenant_id, rule_id)
            if rule is None:
                raise HTTPException(status_code=404, detail="Rule not found")
            return RuleResponse.from_rule(rule)

        @self.app.post("/tenants/{tenant_id}/rules/{rule_id}/toggle", response_model=RuleResponse)
        async def toggle_rule(tenant_id: str, rule_id: str):
            """Flip a rule between active and inactive."""
            rule = await self.rule_store.get_rule(tenant_id, rule_id)
            if rule is None:
                raise HTTPException(status_code=404, detail="Rule not found")

            updated = await self.rule_store.set_active(tenant_id, rule_id, not rule.is_active)
            if updated is None:
                raise HTTPException(status_code=404, detail="Rule not found")
            self.logger.info("Rule toggled", tenant_id=tenant_id, rule_id=rule_id, is_active=updated.is_active)
            return RuleResponse.from_rule(updated)

        @self.app.get("/tenants/{tenant_id}/logs")
        async def list_logs(
            tenant_id: str,
            rule_id: Optional[str] = Query(None),
            table: Optional[str] = Query(None),
            status: Optional[str] = Query(None, pattern="^(success|failed)$"),
            search: Optional[str] = Query(None),
            limit: int = Query(100, ge=1, le=1000),
            offset: int = Query(0, ge=0)
        ):
            """Execution logs of a school, newest first."""
            filters = LogFilters(
                rule_id=rule_id,
                table=table,
                success=None if status is None else status == "success",
                search=search,
                limit=limit,
                offset=offset
            )
            logs = await self.log_store.list_logs(tenant_id, filters)
            return {"logs": [log.to_dict() for log in logs], "count": len(logs)}

        @self.app.get("/tenants/{tenant_id}/logs/stats", response_model=ExecutionStatsResponse)
        async def log_stats(tenant_id: str, rule_id: Optional[str] = Query(None)):
            """Summary statistics for the log viewer."""
            stats = await self.log_store.execution_stats(tenant_id, rule_id)
            return ExecutionStatsResponse(
                total_executions=stats.total_executions,
                successful_executions=stats.successful_executions,
                failed_executions=stats.failed_executions,
                success_rate=stats.success_rate,
                average_execution_time_ms=stats.average_execution_time_ms
            )


def create_app(**config_overrides):
    """Create business rules service application."""
    service = BusinessRulesService(**config_overrides)
    return service.app


if __name__ == "__main__":
    service = BusinessRulesService()
    service.run()
