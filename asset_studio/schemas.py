from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

FIELD_TYPE = Literal["string", "number", "integer", "boolean", "enum", "file", "array"]
MEDIA_TYPE = Literal["image", "video", "audio", "text", "utility"]
MODEL_STATUS = Literal["active", "inactive", "error", "maintenance"]
PREDICTION_STATUS = Literal["starting", "processing", "succeeded", "failed", "canceled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "canceled"})
NON_NULLABLE_MODEL_FIELDS: frozenset[str] = frozenset({"status", "input_schema", "webhook_events"})


class FieldValidation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pattern: str | None = None
    message: str | None = None


class FieldSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: FIELD_TYPE = "string"
    required: bool = False
    optional: bool = False
    default: Any = None
    options: list[Any] | None = None
    min: float | None = None
    max: float | None = None
    accept: str | None = None
    validation: FieldValidation | None = None
    description: str = ""


FieldSchema = dict[str, FieldSpec]


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    slug: str = Field(min_length=1)
    name: str | None = None
    provider: str = "replicate"
    media_type: MEDIA_TYPE
    provider_model_id: str | None = None
    provider_version: str | None = None
    input_schema: FieldSchema = Field(default_factory=dict)
    cost_per_use: float | None = None
    avg_latency_ms: int | None = None
    status: MODEL_STATUS = "active"
    webhook_events: list[str] = Field(default_factory=list)


class PredictionMetrics(BaseModel):
    model_config = ConfigDict(extra="ignore")

    predict_time: float | None = None
    total_time: float | None = None


class PredictionUrls(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stream: str | None = None
    get: str | None = None
    cancel: str | None = None


class PredictionJob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: PREDICTION_STATUS
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    logs: str | list[str] | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    metrics: PredictionMetrics | None = None
    urls: PredictionUrls | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_payload(self) -> dict[str, Any]:
        excluded = {name for name in ("metrics", "urls") if getattr(self, name) is None}
        return self.model_dump(mode="json", exclude=excluded)


class ValidationIssue(BaseModel):
    field: str
    message: str
    value: Any = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    sanitized_input: dict[str, Any] | None = None


class StreamEvent(BaseModel):
    event: str
    data: str
    id: str | None = None
    retry: int | None = None


class RegisterModelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str = Field(min_length=1, max_length=255)
    name: str | None = None
    provider: str = "replicate"
    media_type: MEDIA_TYPE
    provider_model_id: str | None = None
    provider_version: str | None = None
    input_schema: FieldSchema = Field(default_factory=dict)
    cost_per_use: float | None = Field(default=None, ge=0)
    avg_latency_ms: int | None = Field(default=None, ge=0)
    status: MODEL_STATUS = "active"
    webhook_events: list[str] = Field(default_factory=list)


class UpdateModelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    provider_model_id: str | None = None
    provider_version: str | None = None
    input_schema: FieldSchema | None = None
    cost_per_use: float | None = Field(default=None, ge=0)
    avg_latency_ms: int | None = Field(default=None, ge=0)
    status: MODEL_STATUS | None = None
    webhook_events: list[str] | None = None

    @model_validator(mode="after")
    def validate_has_changes(self) -> "UpdateModelRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        cleared = sorted(
            name
            for name in NON_NULLABLE_MODEL_FIELDS
            if name in self.model_fields_set and getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")
        return self


class ValidateInputRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)


class CreatePredictionRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_slug: str = Field(min_length=1)
    input: dict[str, Any] = Field(default_factory=dict)
    project_id: str | None = None
    field_id: str | None = None


class BatchPredictionRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_slug: str = Field(min_length=1)
    inputs: list[dict[str, Any] | None] = Field(min_length=1)
    project_id: str | None = None
    field_id: str | None = None


class EstimateCostRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_slug: str = Field(min_length=1)
    input: dict[str, Any] = Field(default_factory=dict)


class EstimateCostResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_slug: str
    estimated_cost: float
    currency: str = "USD"


class GenerationResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    prediction_id: str
    model_slug: str
    status: PREDICTION_STATUS
    estimated_cost: float | None = None
    output: Any = None
    error: str | None = None
    project_id: str | None = None
    field_id: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class BatchPredictionResponse(BaseModel):
    generations: list[GenerationResponse]


class ModelStats(BaseModel):
    model: ModelDescriptor
    generation_count: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
    recent_success_rate: float | None = None


class ModelCapabilities(BaseModel):
    providers: list[str] = Field(default_factory=list)
    media_types: list[str] = Field(default_factory=list)
