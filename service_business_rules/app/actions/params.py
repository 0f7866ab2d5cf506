"""
Typed action parameters.

Stored actions are free-form ``{type, parameters}`` blobs written by the rule
editor. They are validated here, at dispatch time, into one model per action
type so the engine does not depend on the editor's validation.
"""

import re
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter,
    ValidationError as PydanticValidationError, field_validator, model_validator
)

from shared.errors import ActionValidationError

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def _record_value(record: Mapping[str, Any], path: str) -> Any:
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def render_template(value: Any, record: Mapping[str, Any]) -> Any:
    """Substitute ``{{field}}`` placeholders from the triggering record.

    A string that is exactly one placeholder takes the field's value with its
    original type; placeholders embedded in text are rendered as strings, with
    missing fields rendered empty.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            return _record_value(record, whole.group(1))

        def _substitute(match):
            found = _record_value(record, match.group(1))
            return "" if found is None else str(found)

        return _PLACEHOLDER.sub(_substitute, value)
    if isinstance(value, Mapping):
        return {k: render_template(v, record) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_template(v, record) for v in value]
    return value


def _optional_str(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return value


class SendEmailParameters(BaseModel):
    """Queue a templated email to a literal recipient or one taken from the record."""

    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("template_id", "templateId", "email_template")
    )
    recipient: Optional[str] = Field(
        None, validation_alias=AliasChoices("recipient", "custom_email", "to")
    )
    send_to_field: Optional[str] = Field(
        None, validation_alias=AliasChoices("send_to_field", "sendToField")
    )

    @field_validator("template_id", "recipient", "send_to_field", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return _optional_str(value)

    @model_validator(mode="after")
    def _require_recipient_source(self):
        if not self.recipient and not self.send_to_field:
            raise ValueError("send_email needs a recipient or a send_to_field")
        return self

    def resolve_recipient(self, record: Mapping[str, Any]) -> str:
        if self.recipient:
            return self.recipient
        value = record.get(self.send_to_field) if self.send_to_field else None
        if value is None or not str(value).strip():
            raise ActionValidationError(
                f"Recipient field {self.send_to_field!r} is empty on the record",
                details={"send_to_field": self.send_to_field}
            )
        return str(value).strip()


class UpdateRecordParameters(BaseModel):
    """Update fields on a record, by default the one that triggered the rule."""

    model_config = ConfigDict(extra="ignore")

    table: Optional[str] = None
    record_id: Optional[str] = Field(None, validation_alias=AliasChoices("record_id", "recordId"))
    fields: Dict[str, Any] = Field(default_factory=dict)
    set_field: Optional[str] = Field(None, validation_alias=AliasChoices("set_field", "setField"))
    action_type: Literal["to", "same_as"] = Field(
        "to", validation_alias=AliasChoices("action_type", "actionType")
    )
    value: Any = None

    @field_validator("table", "record_id", "set_field", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return _optional_str(value)

    @model_validator(mode="after")
    def _require_changes(self):
        if not self.fields and not self.set_field:
            raise ValueError("update_record needs a fields map or a set_field")
        if self.action_type == "same_as" and (not isinstance(self.value, str) or not self.value):
            raise ValueError("update_record with action_type 'same_as' needs the source field name as value")
        return self

    def resolve_fields(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """The field/value map to write; a set_field wins over the same key in fields."""
        resolved = dict(self.fields)
        if self.set_field:
            if self.action_type == "same_as":
                resolved[self.set_field] = record.get(self.value)
            else:
                resolved[self.set_field] = self.value
        return resolved


class CreateRecordParameters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    table: str = Field(..., min_length=1)
    fields: Dict[str, Any] = Field(..., min_length=1)


class CreateTaskParameters(BaseModel):
    """Create a row in the tasks table, optionally assigned from a record field."""

    model_config = ConfigDict(extra="ignore")

    title: str = Field(..., min_length=1)
    assign_to_field: Optional[str] = Field(
        None, validation_alias=AliasChoices("assign_to_field", "assignToField")
    )

    @field_validator("title", "assign_to_field", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return _optional_str(value)

    def resolve_fields(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"title": self.title}
        if self.assign_to_field:
            fields["assigned_to"] = record.get(self.assign_to_field)
        return fields


class LogEventParameters(BaseModel):
    model_config = ConfigDict(extra="allow")


class WebhookParameters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Optional[Dict[str, Any]] = None

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return value


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    parameters: SendEmailParameters


class UpdateRecordAction(BaseModel):
    type: Literal["update_record"]
    parameters: UpdateRecordParameters


class CreateRecordAction(BaseModel):
    type: Literal["create_record"]
    parameters: CreateRecordParameters


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    parameters: CreateTaskParameters


class LogEventAction(BaseModel):
    type: Literal["log_event"]
    parameters: LogEventParameters


class WebhookAction(BaseModel):
    type: Literal["webhook"]
    parameters: WebhookParameters


ActionSpec = Annotated[
    Union[
        SendEmailAction, UpdateRecordAction, CreateRecordAction, CreateTaskAction,
        LogEventAction, WebhookAction
    ],
    Field(discriminator="type"),
]

_action_adapter = TypeAdapter(ActionSpec)


def raw_parameters(raw: Any) -> Dict[str, Any]:
    """The stored parameter map of an action, or an empty dict."""
    if isinstance(raw, Mapping) and isinstance(raw.get("parameters"), Mapping):
        return dict(raw["parameters"])
    return {}


def raw_type(raw: Any) -> str:
    if isinstance(raw, Mapping) and raw.get("type") is not None:
        return str(raw["type"])
    return "unknown"


def parse_action_spec(raw: Any, index: int,
                      parameters: Optional[Dict[str, Any]] = None) -> ActionSpec:
    """Validate one stored action into its typed model.

    ``parameters`` replaces the stored parameter map, which lets the caller
    pass in placeholder-substituted values.
    """
    action_type = raw_type(raw)
    if not isinstance(raw, Mapping):
        raise ActionValidationError(
            "Action must be an object with type and parameters",
            action_index=index,
            action_type=action_type
        )

    candidate = {
        "type": raw.get("type"),
        "parameters": parameters if parameters is not None else raw_parameters(raw),
    }
    try:
        return _action_adapter.validate_python(candidate)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        summary = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in errors
        )
        raise ActionValidationError(
            f"Invalid {action_type} action: {summary}",
            action_index=index,
            action_type=action_type,
            details={"errors": errors}
        ) from e
