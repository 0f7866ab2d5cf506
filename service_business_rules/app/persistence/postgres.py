"""
PostgreSQL persistence for rules and execution logs.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from shared.errors import StoreError
from shared.logging import get_logger
from ..rules.models import ExecutionLog, Rule
from .base import ExecutionLogStore, ExecutionStats, LogFilters, RuleStore

RULE_STORE = "rule_store"
LOG_STORE = "execution_log_store"


async def _init_connection(conn: asyncpg.Connection):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")
    await conn.set_type_codec("json", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresPool:
    """Shared asyncpg pool for both stores."""

    def __init__(self, dsn: str, timeout: float = 5.0, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.timeout = timeout
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("business_rules.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Create the pool and the tables."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.timeout,
                init=_init_connection
            )
            await self._create_tables()
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StoreError("postgres", f"start failed: {e}") from e

        self.logger.info("PostgreSQL persistence started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS business_rules (
                    id TEXT PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    trigger_type TEXT NOT NULL,
                    trigger_table TEXT,
                    trigger_conditions JSONB NOT NULL DEFAULT '[]',
                    actions JSONB NOT NULL DEFAULT '[]',
                    field_types JSONB NOT NULL DEFAULT '{}',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    last_executed TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_business_rules_active
                ON business_rules(school_id, trigger_table) WHERE is_active;
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS business_rule_execution_logs (
                    id TEXT PRIMARY KEY,
                    business_rule_id TEXT NOT NULL,
                    school_id TEXT NOT NULL,
                    trigger_event TEXT NOT NULL,
                    target_table TEXT,
                    target_record_id TEXT,
                    before_values JSONB,
                    after_values JSONB,
                    action_details JSONB NOT NULL DEFAULT '{}',
                    success BOOLEAN NOT NULL,
                    error_message TEXT,
                    execution_time_ms DOUBLE PRECISION NOT NULL,
                    executed_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_execution_logs_school
                ON business_rule_execution_logs(school_id, executed_at DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_execution_logs_rule
                ON business_rule_execution_logs(business_rule_id);
            """)

    async def run(self, store: str, method: str, *args) -> Any:
        """Run one pool call bounded by the store timeout, mapping failures to StoreError."""
        if self.pool is None:
            raise StoreError(store, "not started")
        try:
            return await asyncio.wait_for(getattr(self.pool, method)(*args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self.logger.error("Store call timed out", store=store, timeout=self.timeout)
            raise StoreError(store, f"timed out after {self.timeout:g}s") from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            self.logger.error("Store call failed", store=store, error=str(e))
            raise StoreError(store, str(e)) from e


def _row_to_rule(row) -> Rule:
    return Rule(
        id=row["id"],
        school_id=row["school_id"],
        name=row["name"],
        description=row["description"],
        trigger_type=row["trigger_type"],
        trigger_table=row["trigger_table"],
        trigger_conditions=row["trigger_conditions"] or [],
        actions=row["actions"] or [],
        field_types=row["field_types"] or {},
        is_active=row["is_active"],
        last_executed=row["last_executed"],
        created_at=row["created_at"],
    )


def _row_to_log(row) -> ExecutionLog:
    return ExecutionLog(
        id=row["id"],
        business_rule_id=row["business_rule_id"],
        school_id=row["school_id"],
        trigger_event=row["trigger_event"],
        target_table=row["target_table"],
        target_record_id=row["target_record_id"],
        before_values=row["before_values"],
        after_values=row["after_values"],
        action_details=row["action_details"] or {},
        success=row["success"],
        error_message=row["error_message"],
        execution_time_ms=row["execution_time_ms"],
        executed_at=row["executed_at"],
    )


class PostgresRuleStore(RuleStore):
    """Rules in the ``business_rules`` table."""

    def __init__(self, pool: PostgresPool):
        self.pool = pool

    async def start(self):
        await self.pool.start()

    async def stop(self):
        await self.pool.stop()

    async def list_active_rules(self, tenant_id: str, table: Optional[str] = None) -> List[Rule]:
        rows = await self.pool.run(RULE_STORE, "fetch", """
            SELECT * FROM business_rules
            WHERE school_id = $1 AND is_active
              AND ($2::text IS NULL OR trigger_table = $2 OR trigger_table IS NULL)
            ORDER BY created_at ASC, id ASC
        """, tenant_id, table)
        return [_row_to_rule(row) for row in rows]

    async def touch_last_executed(self, tenant_id: str, rule_id: str, timestamp: datetime) -> None:
        await self.pool.run(RULE_STORE, "execute", """
            UPDATE business_rules
            SET last_executed = GREATEST(COALESCE(last_executed, $3), $3)
            WHERE id = $1 AND school_id = $2
        """, rule_id, tenant_id, timestamp)

    async def save_rule(self, rule: Rule) -> Rule:
        await self.pool.run(RULE_STORE, "execute", """
            INSERT INTO business_rules (
                id, school_id, name, description, trigger_type, trigger_table,
                trigger_conditions, actions, field_types, is_active, last_executed, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                description = EXCLUDED.description,
                trigger_type = EXCLUDED.trigger_type,
                trigger_table = EXCLUDED.trigger_table,
                trigger_conditions = EXCLUDED.trigger_conditions,
                actions = EXCLUDED.actions,
                field_types = EXCLUDED.field_types,
                is_active = EXCLUDED.is_active
            WHERE business_rules.school_id = EXCLUDED.school_id
        """,
            rule.id, rule.school_id, rule.name, rule.description, rule.trigger_type,
            rule.trigger_table, rule.trigger_conditions, rule.actions, rule.field_types,
            rule.is_active, rule.last_executed, rule.created_at
        )
        return rule

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[Rule]:
        row = await self.pool.run(RULE_STORE, "fetchrow", """
            SELECT * FROM business_rules WHERE id = $1 AND school_id = $2
        """, rule_id, tenant_id)
        return _row_to_rule(row) if row else None

    async def list_rules(self, tenant_id: str) -> List[Rule]:
        rows = await self.pool.run(RULE_STORE, "fetch", """
            SELECT * FROM business_rules WHERE school_id = $1 ORDER BY created_at ASC, id ASC
        """, tenant_id)
        return [_row_to_rule(row) for row in rows]

    async def set_active(self, tenant_id: str, rule_id: str, is_active: bool) -> Optional[Rule]:
        row = await self.pool.run(RULE_STORE, "fetchrow", """
            UPDATE business_rules SET is_active = $3
            WHERE id = $1 AND school_id = $2
            RETURNING *
        """, rule_id, tenant_id, is_active)
        return _row_to_rule(row) if row else None


class PostgresExecutionLogStore(ExecutionLogStore):
    """Logs in the ``business_rule_execution_logs`` table. Insert only."""

    def __init__(self, pool: PostgresPool):
        self.pool = pool

    async def start(self):
        await self.pool.start()

    async def stop(self):
        await self.pool.stop()

    async def append(self, log: ExecutionLog) -> str:
        await self.pool.run(LOG_STORE, "execute", """
            INSERT INTO business_rule_execution_logs (
                id, business_rule_id, school_id, trigger_event, target_table, target_record_id,
                before_values, after_values, action_details, success, error_message,
                execution_time_ms, executed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
        """,
            log.id, log.business_rule_id, log.school_id, log.trigger_event, log.target_table,
            log.target_record_id, log.before_values, log.after_values, log.action_details,
            log.success, log.error_message, log.execution_time_ms, log.executed_at
        )
        return log.id

    async def list_logs(self, tenant_id: str, filters: Optional[LogFilters] = None) -> List[ExecutionLog]:
        filters = filters or LogFilters()
        search = f"%{filters.search}%" if filters.search else None
        rows = await self.pool.run(LOG_STORE, "fetch", """
            SELECT * FROM business_rule_execution_logs
            WHERE school_id = $1
              AND ($2::text IS NULL OR business_rule_id = $2)
              AND ($3::text IS NULL OR target_table = $3)
              AND ($4::boolean IS NULL OR success = $4)
              AND ($5::text IS NULL
                   OR target_table ILIKE $5
                   OR trigger_event ILIKE $5
                   OR error_message ILIKE $5
                   OR EXISTS (
                       SELECT 1 FROM jsonb_array_elements(action_details -> 'actions') AS a
                       WHERE a ->> 'type' ILIKE $5
                   ))
            ORDER BY executed_at DESC
            LIMIT $6 OFFSET $7
        """, tenant_id, filters.rule_id, filters.table, filters.success, search,
            filters.limit, filters.offset)
        return [_row_to_log(row) for row in rows]

    async def execution_stats(self, tenant_id: str, rule_id: Optional[str] = None) -> ExecutionStats:
        row = await self.pool.run(LOG_STORE, "fetchrow", """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE success) AS successful,
                   AVG(execution_time_ms) AS average_ms
            FROM business_rule_execution_logs
            WHERE school_id = $1 AND ($2::text IS NULL OR business_rule_id = $2)
        """, tenant_id, rule_id)
        total = row["total"] or 0
        successful = row["successful"] or 0
        average = row["average_ms"]
        return ExecutionStats(
            total_executions=total,
            successful_executions=successful,
            failed_executions=total - successful,
            average_execution_time_ms=round(float(average), 3) if average is not None else None
        )
