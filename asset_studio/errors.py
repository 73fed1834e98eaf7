from __future__ import annotations

from enum import Enum
from typing import Any


class AdapterErrorKind(str, Enum):
    configuration_error = "configuration_error"
    invalid_input = "invalid_input"
    provider_error = "provider_error"
    schema_fetch_error = "schema_fetch_error"
    schema_parse_error = "schema_parse_error"
    batch_error = "batch_error"
    unknown = "unknown"


_KIND_HTTP_STATUS: dict[AdapterErrorKind, int] = {
    AdapterErrorKind.configuration_error: 500,
    AdapterErrorKind.invalid_input: 400,
    AdapterErrorKind.provider_error: 502,
    AdapterErrorKind.schema_fetch_error: 502,
    AdapterErrorKind.schema_parse_error: 502,
    AdapterErrorKind.batch_error: 502,
    AdapterErrorKind.unknown: 500,
}


class AdapterError(RuntimeError):
    """Typed failure raised by the schema engine and provider adapter.

    ``status_code`` is the upstream (or HTTP-equivalent) status when one is
    known; ``http_status`` is what the HTTP layer should answer with.
    """

    def __init__(
        self,
        *,
        message: str,
        kind: AdapterErrorKind = AdapterErrorKind.unknown,
        status_code: int | None = None,
        provider: str = "replicate",
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.provider = provider
        self.errors = errors or []

    @property
    def http_status(self) -> int:
        if self.kind in (AdapterErrorKind.invalid_input, AdapterErrorKind.configuration_error):
            if self.status_code is not None:
                return self.status_code
        return _KIND_HTTP_STATUS[self.kind]

    def __str__(self) -> str:
        status = f" status={self.status_code}" if self.status_code is not None else ""
        return f"{self.message}{status}"


class SchemaFetchError(AdapterError):
    def __init__(
        self,
        *,
        message: str,
        model_id: str | None,
        status_code: int | None = None,
        kind: AdapterErrorKind = AdapterErrorKind.schema_fetch_error,
    ) -> None:
        super().__init__(message=message, kind=kind, status_code=status_code)
        self.model_id = model_id


class SchemaParseError(SchemaFetchError):
    """The provider answered, but its schema document cannot be interpreted."""

    def __init__(self, *, message: str, model_id: str | None = None) -> None:
        super().__init__(message=message, model_id=model_id, kind=AdapterErrorKind.schema_parse_error)


class CatalogError(RuntimeError):
    def __init__(self, *, message: str, code: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
