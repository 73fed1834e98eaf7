from __future__ import annotations

import json
import logging
import math
import re
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any, Annotated, Generic, Literal, TypeVar
from urllib.parse import urlparse

import httpx
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, create_model
from pydantic_core import PydanticCustomError

from asset_studio.config import settings
from asset_studio.errors import SchemaFetchError, SchemaParseError
from asset_studio.schemas import FieldSchema, FieldSpec, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

_OPENAPI_PRIMITIVE_TYPES = {"string", "number", "integer", "boolean", "array"}
_FILE_FORMATS = {"uri", "data-url"}
_ACCEPT_BY_NAME_HINT = (("audio", "audio/*"), ("image", "image/*"), ("video", "video/*"))
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")

V = TypeVar("V")


class _LruCache(Generic[V]):
    def __init__(self, max_entries: int) -> None:
        self._max_entries = max(1, max_entries)
        self._entries: OrderedDict[str, V] = OrderedDict()

    def get(self, key: str) -> V | None:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _file_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return value
    if hasattr(value, "read") and not isinstance(value, str):
        return value
    if isinstance(value, str):
        if value.startswith("data:"):
            return value
        parsed = urlparse(value)
        if parsed.scheme and parsed.netloc:
            return value
    raise PydanticCustomError("file_value", "Expected an absolute URL, a data URL, or binary content")


def _pattern_check(pattern: str, message: str | None) -> AfterValidator:
    compiled = re.compile(pattern)
    error_message = message or f"Must match pattern: {pattern}"

    def check(value: str) -> str:
        if compiled.search(value) is None:
            raise PydanticCustomError("pattern_mismatch", error_message)
        return value

    return AfterValidator(check)


def _parse_int(value: str) -> Any:
    match = _LEADING_INT_RE.match(value)
    if not match:
        return value
    return int(match.group(1))


def _parse_float(value: str) -> Any:
    try:
        return float(value.strip())
    except ValueError:
        return value


def coerce_schema(schema: Mapping[str, Any] | None) -> FieldSchema:
    """Accept FieldSpec instances or their plain-dict form (as stored in the DB)."""
    coerced: FieldSchema = {}
    for name, spec in (schema or {}).items():
        coerced[name] = spec if isinstance(spec, FieldSpec) else FieldSpec.model_validate(spec)
    return coerced


def schema_fingerprint(schema: FieldSchema) -> str:
    payload = {name: spec.model_dump(mode="json", exclude_none=True) for name, spec in schema.items()}
    return json.dumps(payload, sort_keys=True, default=str)


class SchemaEngine:
    """Turns provider input schemas into runtime validators and provider-ready input."""

    def __init__(
        self,
        *,
        api_token: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_cache_entries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_token = (api_token or settings.REPLICATE_API_TOKEN or "").strip()
        self._base_url = (base_url or settings.replicate_base_url).rstrip("/")
        self._timeout = float(timeout_seconds or settings.REPLICATE_REQUEST_TIMEOUT_SECONDS)
        self._transport = transport
        cache_size = max_cache_entries or settings.SCHEMA_CACHE_MAX_ENTRIES
        self._schema_cache: _LruCache[FieldSchema] = _LruCache(cache_size)
        self._validator_cache: _LruCache[type[BaseModel]] = _LruCache(cache_size)

    # Schema fetching

    async def fetch_schema(self, provider_model_id: str, version: str | None = "latest") -> FieldSchema:
        resolved_version = (version or "latest").strip() or "latest"
        cache_key = f"{provider_model_id}:{resolved_version}"
        cached = self._schema_cache.get(cache_key)
        if cached is not None:
            return dict(cached)

        if not self._api_token:
            raise SchemaFetchError(message="REPLICATE_API_TOKEN not configured", model_id=provider_model_id)

        model_info = await self._get_json(f"/models/{provider_model_id}", model_id=provider_model_id)
        version_id = resolved_version
        if resolved_version == "latest":
            latest = model_info.get("latest_version")
            if not isinstance(latest, dict) or not latest.get("id"):
                raise SchemaFetchError(
                    message=f"Model {provider_model_id} has no latest version",
                    model_id=provider_model_id,
                )
            version_id = str(latest["id"])

        version_info = await self._get_json(
            f"/models/{provider_model_id}/versions/{version_id}",
            model_id=provider_model_id,
        )
        schema = self.parse_openapi_schema(version_info.get("openapi_schema"), model_id=provider_model_id)
        self._schema_cache.set(cache_key, schema)
        logger.info(
            "Fetched input schema for %s (version=%s, fields=%d)",
            provider_model_id,
            version_id,
            len(schema),
        )
        return dict(schema)

    async def _get_json(self, path: str, *, model_id: str) -> dict[str, Any]:
        headers = {
            "Authorization": f"Token {self._api_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(path, headers=headers)
        except httpx.RequestError as exc:
            raise SchemaFetchError(
                message=f"Network error while fetching schema: {exc}",
                model_id=model_id,
            ) from exc

        if response.status_code >= 400:
            raise SchemaFetchError(
                message=f"Failed to fetch {path} ({response.status_code}): {response.text}",
                model_id=model_id,
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise SchemaFetchError(message=f"Invalid JSON from {path}", model_id=model_id) from exc
        if not isinstance(body, dict):
            raise SchemaFetchError(message=f"Response from {path} must be a JSON object", model_id=model_id)
        return body

    # Schema parsing

    def parse_openapi_schema(self, document: Any, *, model_id: str | None = None) -> FieldSchema:
        components = (document or {}).get("components") if isinstance(document, dict) else None
        schemas = (components or {}).get("schemas") if isinstance(components, dict) else None
        input_schema = (schemas or {}).get("Input") if isinstance(schemas, dict) else None
        if not isinstance(input_schema, dict):
            raise SchemaParseError(message="No Input schema found in OpenAPI document", model_id=model_id)
        properties = input_schema.get("properties")
        if not isinstance(properties, dict):
            raise SchemaParseError(message="Input schema has no properties", model_id=model_id)

        required = input_schema.get("required") or []
        parsed: FieldSchema = {}
        for field_name, raw_property in properties.items():
            if not isinstance(raw_property, dict):
                raise SchemaParseError(
                    message=f"Input property {field_name!r} must be an object",
                    model_id=model_id,
                )
            prop = self._resolve_refs(raw_property, schemas)
            parsed[field_name] = self._field_spec(field_name, prop, required=field_name in required)
        return parsed

    @staticmethod
    def _resolve_refs(prop: dict[str, Any], schemas: dict[str, Any]) -> dict[str, Any]:
        # Replicate expresses enums as allOf: [{"$ref": "#/components/schemas/<name>"}].
        merged: dict[str, Any] = {}
        refs = [prop] + [item for item in prop.get("allOf") or [] if isinstance(item, dict)]
        for item in refs:
            ref = item.get("$ref")
            if isinstance(ref, str) and ref.startswith("#/components/schemas/"):
                target = schemas.get(ref.rsplit("/", 1)[-1])
                if isinstance(target, dict):
                    for key, value in target.items():
                        merged.setdefault(key, value)
        resolved = dict(merged)
        resolved.update({key: value for key, value in prop.items() if key != "allOf"})
        return resolved

    @staticmethod
    def _field_spec(field_name: str, prop: dict[str, Any], *, required: bool) -> FieldSpec:
        declared = prop.get("type")
        values: dict[str, Any] = {
            "type": declared if declared in _OPENAPI_PRIMITIVE_TYPES else "string",
            "required": required,
            "description": prop.get("description") or "",
            "default": prop.get("default"),
        }

        enum_values = prop.get("enum")
        if isinstance(enum_values, list):
            values["type"] = "enum"
            values["options"] = list(enum_values)

        if prop.get("format") in _FILE_FORMATS:
            values["type"] = "file"
            values.pop("options", None)
            lowered = field_name.lower()
            for hint, accept in _ACCEPT_BY_NAME_HINT:
                if hint in lowered:
                    values["accept"] = accept
                    break

        if prop.get("minimum") is not None:
            values["min"] = prop["minimum"]
        if prop.get("maximum") is not None:
            values["max"] = prop["maximum"]
        if prop.get("pattern"):
            values["validation"] = {
                "pattern": prop["pattern"],
                "message": f"Must match pattern: {prop['pattern']}",
            }
        return FieldSpec.model_validate(values)

    # Validation

    def validate_input(self, schema: Mapping[str, Any] | None, input: Mapping[str, Any] | None) -> ValidationResult:
        payload = dict(input or {})
        try:
            field_schema = coerce_schema(schema)
            validator = self._get_validator(field_schema)
        except Exception as exc:
            logger.exception("Failed to build input validator")
            return ValidationResult(
                valid=False,
                errors=[ValidationIssue(field="schema", message=f"Validation error: {exc}")],
            )

        try:
            instance = validator.model_validate(payload)
        except ValidationError as exc:
            issues: list[ValidationIssue] = []
            for error in exc.errors():
                location = [str(part) for part in error.get("loc", ())]
                field = ".".join(location) or "input"
                head = location[0] if location else None
                value = payload.get(head) if head in payload else None
                issues.append(ValidationIssue(field=field, message=error["msg"], value=value))
            return ValidationResult(valid=False, errors=issues)

        sanitized = instance.model_dump(by_alias=True)
        for name, spec in field_schema.items():
            if name not in payload and spec.default is None:
                sanitized.pop(name, None)
        return ValidationResult(valid=True, errors=[], sanitized_input=sanitized)

    def _get_validator(self, schema: FieldSchema) -> type[BaseModel]:
        cache_key = schema_fingerprint(schema)
        cached = self._validator_cache.get(cache_key)
        if cached is not None:
            return cached
        validator = self._build_validator(schema)
        self._validator_cache.set(cache_key, validator)
        return validator

    def _build_validator(self, schema: FieldSchema) -> type[BaseModel]:
        definitions: dict[str, Any] = {}
        for index, (field_name, spec) in enumerate(schema.items()):
            annotation = self._field_annotation(spec)
            if spec.default is not None:
                field = Field(default=spec.default, alias=field_name)
            elif spec.required and not spec.optional:
                field = Field(..., alias=field_name)
            else:
                field = Field(default=None, alias=field_name)
            definitions[f"input_field_{index}"] = (annotation, field)
        return create_model(
            "ProviderInput",
            __config__=ConfigDict(extra="ignore", populate_by_name=False, arbitrary_types_allowed=True),
            **definitions,
        )

    @staticmethod
    def _field_annotation(spec: FieldSpec) -> Any:
        if spec.type == "string":
            if spec.validation and spec.validation.pattern:
                return Annotated[str, _pattern_check(spec.validation.pattern, spec.validation.message)]
            return str
        if spec.type == "integer":
            lower = math.ceil(spec.min) if spec.min is not None else None
            upper = math.floor(spec.max) if spec.max is not None else None
            return Annotated[int, Field(ge=lower, le=upper)]
        if spec.type == "number":
            return Annotated[float, Field(ge=spec.min, le=spec.max)]
        if spec.type == "boolean":
            return bool
        if spec.type == "enum":
            if not spec.options:
                return str
            return Literal[tuple(spec.options)]
        if spec.type == "file":
            return Annotated[Any, AfterValidator(_file_value)]
        if spec.type == "array":
            return list[Any]
        return Any

    # Provider transform

    def transform_input_for_provider(
        self, schema: Mapping[str, Any] | None, input: Mapping[str, Any]
    ) -> dict[str, Any]:
        field_schema = coerce_schema(schema)
        transformed: dict[str, Any] = {}
        for key, value in input.items():
            spec = field_schema.get(key)
            if spec is None:
                transformed[key] = value
                continue
            if spec.type == "integer" and isinstance(value, str):
                transformed[key] = _parse_int(value)
            elif spec.type == "number" and isinstance(value, str):
                transformed[key] = _parse_float(value)
            elif spec.type == "boolean":
                transformed[key] = value.lower() == "true" if isinstance(value, str) else bool(value)
            else:
                transformed[key] = value
        return transformed

    # Utilities

    def describe_field(self, schema: Mapping[str, Any], field_name: str) -> str:
        field_schema = coerce_schema(schema)
        spec = field_schema.get(field_name)
        if spec is None:
            return ""
        constraints: list[str] = []
        if spec.required:
            constraints.append("Required")
        if spec.min is not None and spec.max is not None:
            constraints.append(f"Range: {spec.min:g}-{spec.max:g}")
        elif spec.min is not None:
            constraints.append(f"Min: {spec.min:g}")
        elif spec.max is not None:
            constraints.append(f"Max: {spec.max:g}")
        if spec.options:
            constraints.append(f"Options: {', '.join(str(option) for option in spec.options)}")
        if spec.default is not None:
            constraints.append(f"Default: {spec.default}")
        if not constraints:
            return spec.description
        return f"{spec.description} ({', '.join(constraints)})".strip()

    @staticmethod
    def required_fields(schema: Mapping[str, Any]) -> list[str]:
        return [name for name, spec in coerce_schema(schema).items() if spec.required]

    @staticmethod
    def optional_fields(schema: Mapping[str, Any]) -> list[str]:
        return [name for name, spec in coerce_schema(schema).items() if not spec.required]

    def clear_cache(self) -> None:
        self._schema_cache.clear()
        self._validator_cache.clear()

    def cache_stats(self) -> dict[str, int]:
        return {
            "schema_cache": len(self._schema_cache),
            "validator_cache": len(self._validator_cache),
        }
