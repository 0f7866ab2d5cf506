"""
Rule, change-event and execution-log models for the Business Rule Engine.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field, field_validator

from shared.errors import MatchingError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(str, Enum):
    """Event categories a rule can watch."""
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"
    TIME_BASED = "time_based"


class EventOperation(str, Enum):
    """Operations carried by change events."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    TIME_BASED = "time_based"


TRIGGER_FOR_OPERATION: Dict[EventOperation, TriggerType] = {
    EventOperation.CREATED: TriggerType.RECORD_CREATED,
    EventOperation.UPDATED: TriggerType.RECORD_UPDATED,
    EventOperation.DELETED: TriggerType.RECORD_DELETED,
    EventOperation.TIME_BASED: TriggerType.TIME_BASED,
}


class ConditionOperator(str, Enum):
    """Condition operators offered by the rule builder."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class ActionType(str, Enum):
    """Action types a rule can run."""
    SEND_EMAIL = "send_email"
    UPDATE_RECORD = "update_record"
    CREATE_RECORD = "create_record"
    CREATE_TASK = "create_task"
    LOG_EVENT = "log_event"
    WEBHOOK = "webhook"


class FiringState(str, Enum):
    """Lifecycle of one rule firing. COMPLETED and FAILED are terminal."""
    EVENT_RECEIVED = "EVENT_RECEIVED"
    RULES_MATCHED = "RULES_MATCHED"
    CONDITIONS_EVALUATED = "CONDITIONS_EVALUATED"
    ACTIONS_DISPATCHED = "ACTIONS_DISPATCHED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Condition:
    """A single field comparison."""
    field: str
    operator: ConditionOperator
    value: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> "Condition":
        """Parse a stored condition, raising MatchingError when it is malformed."""
        if isinstance(raw, Condition):
            return raw
        if not isinstance(raw, Mapping):
            raise MatchingError(
                "Condition must be an object with field, operator and value",
                details={"condition": repr(raw)}
            )
        field_name = raw.get("field")
        if not isinstance(field_name, str) or not field_name:
            raise MatchingError("Condition is missing a field name", details={"condition": dict(raw)})
        try:
            operator = ConditionOperator(raw.get("operator"))
        except ValueError:
            raise MatchingError(
                f"Unknown condition operator: {raw.get('operator')!r}",
                details={"condition": dict(raw)}
            )
        return cls(field=field_name, operator=operator, value=raw.get("value"))


@dataclass
class Rule:
    """A stored trigger + conditions + actions definition owned by one school.

    ``trigger_conditions`` and ``actions`` hold the stored JSON as-is; they are
    parsed when the rule is evaluated or dispatched so that one malformed rule
    cannot break loading the others.
    """
    id: str
    school_id: str
    name: str
    trigger_type: str
    trigger_table: Optional[str] = None
    trigger_conditions: List[Any] = field(default_factory=list)
    actions: List[Any] = field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True
    last_executed: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    # column name -> data type for the trigger table
    field_types: Dict[str, str] = field(default_factory=dict)

    @property
    def sort_key(self):
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (created, str(self.id))


@dataclass
class ChangeEvent:
    """A row change (or a synthetic scheduler tick) for one tenant."""
    table: Optional[str]
    operation: EventOperation
    tenant_id: str
    old_row: Optional[Dict[str, Any]] = None
    new_row: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def record_id(self) -> Optional[str]:
        for row in (self.new_row, self.old_row):
            if row and row.get("id") is not None:
                return str(row["id"])
        return None

    @property
    def condition_record(self) -> Dict[str, Any]:
        """The row conditions are evaluated against."""
        if self.operation == EventOperation.DELETED:
            return self.old_row or {}
        if self.new_row is not None:
            return self.new_row
        return self.old_row or {}

    @classmethod
    def time_based(cls, tenant_id: str, table: Optional[str] = None,
                   row: Optional[Dict[str, Any]] = None,
                   occurred_at: Optional[datetime] = None) -> "ChangeEvent":
        """Build the synthetic event emitted by the scheduler."""
        return cls(
            table=table,
            operation=EventOperation.TIME_BASED,
            tenant_id=tenant_id,
            new_row=row,
            occurred_at=occurred_at or utcnow(),
        )


@dataclass
class ActionContext:
    """What an action knows about the firing it belongs to."""
    tenant_id: str
    target_table: Optional[str]
    target_record_id: Optional[str]
    before_values: Optional[Dict[str, Any]] = None
    after_values: Optional[Dict[str, Any]] = None
    rule_id: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def record(self) -> Dict[str, Any]:
        if self.after_values is not None:
            return self.after_values
        return self.before_values or {}

    @classmethod
    def for_firing(cls, rule: Rule, event: ChangeEvent) -> "ActionContext":
        return cls(
            tenant_id=event.tenant_id,
            target_table=event.table,
            target_record_id=event.record_id,
            before_values=event.old_row,
            after_values=event.new_row,
            rule_id=rule.id,
            event_id=event.event_id,
        )


@dataclass
class ActionResult:
    """Outcome of one dispatched action."""
    index: int
    type: str
    parameters: Dict[str, Any]
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "type": self.type,
            "parameters": self.parameters,
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "error_code": self.error_code,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class DispatchOutcome:
    """All action results of one firing, in execution order."""
    results: List[ActionResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failed_result(self) -> Optional[ActionResult]:
        for r in self.results:
            if not r.success:
                return r
        return None


@dataclass(frozen=True)
class ExecutionLog:
    """Immutable audit record of one firing."""
    id: str
    business_rule_id: str
    school_id: str
    trigger_event: str
    target_table: Optional[str]
    target_record_id: Optional[str]
    before_values: Optional[Dict[str, Any]]
    after_values: Optional[Dict[str, Any]]
    action_details: Dict[str, Any]
    success: bool
    error_message: Optional[str]
    execution_time_ms: float
    executed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "business_rule_id": self.business_rule_id,
            "school_id": self.school_id,
            "trigger_event": self.trigger_event,
            "target_table": self.target_table,
            "target_record_id": self.target_record_id,
            "before_values": self.before_values,
            "after_values": self.after_values,
            "action_details": self.action_details,
            "success": self.success,
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
            "executed_at": self.executed_at.isoformat(),
        }


@dataclass
class FiringReport:
    """Summary of one firing, returned to the event consumer."""
    rule_id: str
    state: FiringState
    log_id: str
    error_message: Optional[str] = None


@dataclass
class EventProcessingReport:
    """What happened to one change event."""
    event_id: str
    tenant_id: str
    rules_considered: int = 0
    firings: List[FiringReport] = field(default_factory=list)

    @property
    def matched_rule_ids(self) -> List[str]:
        return [f.rule_id for f in self.firings]


# API request / response models

class ConditionModel(BaseModel):
    field: str = Field(..., min_length=1, description="Column name")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Comparison value")


class ConditionGroupModel(BaseModel):
    conditions: List[ConditionModel] = Field(default_factory=list, description="AND-combined conditions")


class ActionSpecModel(BaseModel):
    type: ActionType = Field(..., description="Action type")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Type specific parameters")


class RuleCreateRequest(BaseModel):
    """Request model for creating a rule."""
    name: str = Field(..., min_length=1, description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    trigger_type: TriggerType = Field(..., description="Trigger type")
    trigger_table: Optional[str] = Field(None, description="Monitored table")
    trigger_conditions: List[ConditionGroupModel] = Field(default_factory=list, description="OR-combined groups")
    actions: List[ActionSpecModel] = Field(default_factory=list, description="Ordered actions")
    is_active: bool = Field(True, description="Whether the rule is active")
    field_types: Dict[str, str] = Field(default_factory=dict, description="Column data types of the trigger table")

    @field_validator("trigger_conditions", mode="before")
    @classmethod
    def _wrap_bare_groups(cls, value: Any) -> Any:
        # Groups may arrive as bare condition lists as well as {"conditions": [...]}.
        if isinstance(value, list):
            return [{"conditions": g} if isinstance(g, list) else g for g in value]
        return value

    @field_validator("trigger_table")
    @classmethod
    def _strip_table(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            value = value.strip() or None
        return value

    def to_rule(self, school_id: str) -> Rule:
        if self.trigger_type != TriggerType.TIME_BASED and not self.trigger_table:
            raise ValueError("trigger_table is required for record triggers")
        return Rule(
            id=str(uuid.uuid4()),
            school_id=school_id,
            name=self.name,
            description=self.description,
            trigger_type=self.trigger_type.value,
            trigger_table=self.trigger_table,
            trigger_conditions=[g.model_dump(mode="json") for g in self.trigger_conditions],
            actions=[a.model_dump(mode="json") for a in self.actions],
            is_active=self.is_active,
            field_types=dict(self.field_types),
        )


class RuleResponse(BaseModel):
    """Response model for rule operations."""
    id: str
    school_id: str
    name: str
    description: Optional[str]
    trigger_type: str
    trigger_table: Optional[str]
    trigger_conditions: List[Any]
    actions: List[Any]
    is_active: bool
    last_executed: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_rule(cls, rule: Rule) -> "RuleResponse":
        return cls(
            id=rule.id,
            school_id=rule.school_id,
            name=rule.name,
            description=rule.description,
            trigger_type=rule.trigger_type,
            trigger_table=rule.trigger_table,
            trigger_conditions=rule.trigger_conditions,
            actions=rule.actions,
            is_active=rule.is_active,
            last_executed=rule.last_executed,
            created_at=rule.created_at,
        )


class ChangeEventRequest(BaseModel):
    """A change event as delivered by the change-data source."""
    table: Optional[str] = Field(None, description="Table the row belongs to")
    operation: EventOperation = Field(..., description="created | updated | deleted | time_based")
    tenant_id: str = Field(..., min_length=1, alias="tenantId", description="School the row belongs to")
    old_row: Optional[Dict[str, Any]] = Field(None, alias="oldRow", description="Row before the change")
    new_row: Optional[Dict[str, Any]] = Field(None, alias="newRow", description="Row after the change")
    occurred_at: Optional[datetime] = Field(None, alias="occurredAt", description="When the change happened")
    event_id: Optional[str] = Field(None, alias="eventId", description="Source event identifier")

    model_config = {"populate_by_name": True}

    def to_event(self) -> ChangeEvent:
        event = ChangeEvent(
            table=self.table,
            operation=self.operation,
            tenant_id=self.tenant_id,
            old_row=self.old_row,
            new_row=self.new_row,
            occurred_at=self.occurred_at or utcnow(),
        )
        if self.event_id:
            event.event_id = self.event_id
        return event


class FiringResponse(BaseModel):
    rule_id: str
    state: FiringState
    log_id: str
    error_message: Optional[str] = None


class EventProcessingResponse(BaseModel):
    event_id: str
    tenant_id: str
    rules_considered: int
    firings: List[FiringResponse]

    @classmethod
    def from_report(cls, report: EventProcessingReport) -> "EventProcessingResponse":
        return cls(
            event_id=report.event_id,
            tenant_id=report.tenant_id,
            rules_considered=report.rules_considered,
            firings=[
                FiringResponse(
                    rule_id=f.rule_id,
                    state=f.state,
                    log_id=f.log_id,
                    error_message=f.error_message,
                )
                for f in report.firings
            ],
        )


class ExecutionStatsResponse(BaseModel):
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    average_execution_time_ms: Optional[float]


def normalize_condition_groups(raw_groups: Optional[Sequence[Any]]) -> List[List[Condition]]:
    """Parse stored condition groups into lists of Conditions.

    Accepts both the builder's ``[{"conditions": [...]}, ...]`` shape and a
    bare ``[[...], ...]`` list of lists. Groups without conditions are dropped.
    """
    if raw_groups is None:
        return []
    if isinstance(raw_groups, (str, bytes)) or not isinstance(raw_groups, Sequence):
        raise MatchingError(
            "trigger_conditions must be a list of condition groups",
            details={"trigger_conditions": repr(raw_groups)}
        )

    groups: List[List[Condition]] = []
    for index, raw_group in enumerate(raw_groups):
        if isinstance(raw_group, Mapping):
            if "conditions" not in raw_group:
                raise MatchingError(
                    f"Condition group {index} has no conditions list",
                    details={"group_index": index}
                )
            raw_conditions = raw_group["conditions"]
        else:
            raw_conditions = raw_group
        if raw_conditions is None:
            raw_conditions = []
        if isinstance(raw_conditions, (str, bytes)) or not isinstance(raw_conditions, Sequence):
            raise MatchingError(
                f"Condition group {index} must contain a list of conditions",
                details={"group_index": index}
            )
        conditions = [Condition.from_raw(c) for c in raw_conditions]
        if conditions:
            groups.append(conditions)
    return groups
