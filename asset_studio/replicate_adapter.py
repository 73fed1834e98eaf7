from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import ValidationError

from asset_studio.config import settings
from asset_studio.errors import AdapterError, AdapterErrorKind
from asset_studio.schema_engine import SchemaEngine
from asset_studio.schemas import (
    FieldSchema,
    ModelDescriptor,
    PredictionJob,
    StreamEvent,
    ValidationIssue,
    ValidationResult,
)
from asset_studio.security import check_webhook_signature

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.replicate.com/v1"
BASELINE_VIDEO_FRAMES = 24


def _format_issues(issues: list[ValidationIssue]) -> str:
    return ", ".join(f"{issue.field}: {issue.message}" for issue in issues)


class ReplicateAdapter:
    """Drives Replicate predictions through create, poll, cancel and webhook checks.

    The adapter holds no job state; every call observes the prediction at the
    provider. Input is always validated and transformed by the schema engine
    before it leaves the process.
    """

    provider = "replicate"

    def __init__(
        self,
        *,
        api_token: str | None,
        base_url: str | None = None,
        timeout_seconds: float = 30.0,
        retries: int = 0,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        poll_interval_seconds: float = 1.5,
        schema_engine: SchemaEngine | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        resolved_token = (api_token or "").strip()
        if not resolved_token:
            raise AdapterError(
                message="Replicate API token is required",
                kind=AdapterErrorKind.configuration_error,
            )
        self.api_token = resolved_token
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.retries = int(retries)
        self.webhook_url = webhook_url or None
        self.webhook_secret = webhook_secret or None
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.transport = transport
        self.schema_engine = schema_engine or SchemaEngine(
            api_token=resolved_token,
            base_url=self.base_url,
            timeout_seconds=self.timeout_seconds,
            transport=transport,
        )

    # Predictions

    async def run(self, model: ModelDescriptor, input: dict[str, Any]) -> PredictionJob:
        try:
            validation = self.validate_input(model, input)
            if not validation.valid:
                raise AdapterError(
                    message=f"Invalid input: {_format_issues(validation.errors)}",
                    kind=AdapterErrorKind.invalid_input,
                    status_code=400,
                    errors=[issue.model_dump() for issue in validation.errors],
                )

            transformed = self.schema_engine.transform_input_for_provider(
                model.input_schema,
                validation.sanitized_input or {},
            )
            payload: dict[str, Any] = {"input": transformed}
            version = (model.provider_version or "").strip()
            if version:
                payload["version"] = version
            elif model.provider_model_id:
                payload["model"] = model.provider_model_id
            else:
                raise AdapterError(
                    message=f"Model {model.slug} is missing both version and provider model id",
                    kind=AdapterErrorKind.configuration_error,
                    status_code=400,
                )

            if model.webhook_events and self.webhook_url:
                payload["webhook"] = self.webhook_url
                payload["webhook_events_filter"] = list(model.webhook_events)

            raw = await self._request_json("POST", "/predictions", json_payload=payload)
            job = self._decode_prediction(raw)
        except AdapterError as exc:
            logger.error("Error running model %s: %s", model.slug, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected error running model %s", model.slug)
            raise AdapterError(message=f"Failed to run prediction: {exc}") from exc

        logger.info("Created prediction %s for model %s (status=%s)", job.id, model.slug, job.status)
        return job

    async def get_status(self, job_id: str) -> PredictionJob:
        try:
            raw = await self._request_json("GET", f"/predictions/{job_id}")
            job = self._decode_prediction(raw)
        except AdapterError as exc:
            logger.error("Error getting prediction status %s: %s", job_id, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected error getting prediction status %s", job_id)
            raise AdapterError(message=f"Failed to get prediction status: {exc}") from exc

        logger.debug(
            "Prediction %s status=%s has_output=%s has_error=%s",
            job.id,
            job.status,
            job.output is not None,
            job.error is not None,
        )
        return job

    async def wait_for_completion(
        self,
        job_id: str,
        *,
        interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
    ) -> PredictionJob:
        """Poll until the prediction reaches a terminal status.

        Without ``timeout_seconds`` the wait is unbounded. Hitting the deadline
        raises but leaves the prediction running at the provider; call
        ``cancel`` to stop it.
        """
        interval = self.poll_interval_seconds if interval_seconds is None else max(0.0, interval_seconds)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds if timeout_seconds is not None else None

        logger.info("Waiting for prediction %s (interval=%.2fs)", job_id, interval)
        job = await self.get_status(job_id)
        while not job.is_terminal:
            delay = interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AdapterError(
                        message=f"Timed out waiting for prediction {job_id} (last status={job.status})",
                        kind=AdapterErrorKind.provider_error,
                        status_code=504,
                    )
                delay = min(interval, remaining)
            await asyncio.sleep(delay)
            job = await self.get_status(job_id)

        logger.info("Prediction %s finished with status %s", job_id, job.status)
        return job

    async def cancel(self, job_id: str) -> bool:
        try:
            await self._request_json("POST", f"/predictions/{job_id}/cancel")
        except Exception as exc:
            logger.warning("Error canceling prediction %s: %s", job_id, exc)
            return False
        logger.info("Canceled prediction %s", job_id)
        return True

    async def run_batch(
        self,
        model: ModelDescriptor,
        inputs: list[dict[str, Any] | None],
    ) -> list[PredictionJob]:
        prepared: list[dict[str, Any]] = []
        for index, item in enumerate(inputs):
            if item is None:
                continue
            validation = self.validate_input(model, item)
            if not validation.valid:
                raise AdapterError(
                    message=f"Invalid input at index {index}: {_format_issues(validation.errors)}",
                    kind=AdapterErrorKind.invalid_input,
                    status_code=400,
                    errors=[{**issue.model_dump(), "index": index} for issue in validation.errors],
                )
            prepared.append(validation.sanitized_input or {})

        try:
            jobs = await asyncio.gather(*(self.run(model, item) for item in prepared))
        except AdapterError as exc:
            raise AdapterError(
                message=f"Batch prediction failed: {exc.message}",
                kind=AdapterErrorKind.batch_error,
                status_code=exc.status_code,
            ) from exc
        logger.info("Submitted batch of %d predictions for model %s", len(jobs), model.slug)
        return list(jobs)

    # Schema

    async def fetch_schema(self, model_id: str, version: str | None = None) -> FieldSchema:
        return await self.schema_engine.fetch_schema(model_id, version or "latest")

    def validate_input(self, model: ModelDescriptor, input: dict[str, Any]) -> ValidationResult:
        return self.schema_engine.validate_input(model.input_schema, input)

    # Cost

    def estimate_cost(self, model: ModelDescriptor, input: dict[str, Any]) -> float:
        base_cost = model.cost_per_use or 0.0
        try:
            cost = float(base_cost)
            if model.media_type == "text" and input.get("max_tokens"):
                cost = cost * float(input["max_tokens"]) / 1000
            elif model.media_type == "image" and input.get("num_outputs"):
                cost = cost * float(input["num_outputs"])
            elif model.media_type == "video" and input.get("num_frames"):
                cost = cost * float(input["num_frames"]) / BASELINE_VIDEO_FRAMES
            return round(cost, 5)
        except Exception as exc:
            logger.warning("Error estimating cost for %s: %s", model.slug, exc)
            return base_cost

    # Webhooks

    def validate_webhook(self, signature: str | None, raw_body: bytes | str) -> bool:
        return check_webhook_signature(
            secret=self.webhook_secret,
            body=raw_body,
            supplied_signature=signature,
        )

    # Discovery

    async def health_check(self) -> bool:
        try:
            await self._request_json("GET", "/models", params={"page_size": 1})
        except Exception as exc:
            logger.warning("Replicate adapter health check failed: %s", exc)
            return False
        return True

    async def list_models(self, *, owner: str | None = None) -> list[dict[str, Any]]:
        params = {"owner": owner} if owner else None
        body = await self._request_json("GET", "/models", params=params)
        results = body.get("results") or []
        if not isinstance(results, list):
            raise AdapterError(
                message="Model list response is invalid",
                kind=AdapterErrorKind.provider_error,
            )
        return [item for item in results if isinstance(item, dict)]

    async def get_model_info(self, model_id: str) -> dict[str, Any]:
        return await self._request_json("GET", f"/models/{model_id}")

    async def stream_events(self, job_id: str) -> AsyncIterator[StreamEvent]:
        job = await self.get_status(job_id)
        stream_url = job.urls.stream if job.urls else None
        if not stream_url:
            raise AdapterError(
                message=f"No stream URL available for prediction {job_id}",
                kind=AdapterErrorKind.provider_error,
            )

        headers = {**self._headers(), "Accept": "text/event-stream", "Cache-Control": "no-store"}
        try:
            async with httpx.AsyncClient(timeout=None, transport=self._build_transport()) as client:
                async with client.stream("GET", stream_url, headers=headers) as response:
                    if response.status_code >= 400:
                        raise AdapterError(
                            message=f"Prediction stream failed ({response.status_code})",
                            kind=AdapterErrorKind.provider_error,
                            status_code=response.status_code,
                        )
                    fields: dict[str, str] = {}
                    data_lines: list[str] = []
                    async for line in response.aiter_lines():
                        if line:
                            if line.startswith(":"):
                                continue
                            name, _, value = line.partition(":")
                            value = value[1:] if value.startswith(" ") else value
                            if name == "data":
                                data_lines.append(value)
                            elif name in ("event", "id", "retry"):
                                fields[name] = value
                            continue
                        if not data_lines and not fields:
                            continue
                        event = StreamEvent(
                            event=fields.get("event") or "message",
                            data="\n".join(data_lines),
                            id=fields.get("id"),
                            retry=int(fields["retry"]) if fields.get("retry", "").isdigit() else None,
                        )
                        fields, data_lines = {}, []
                        yield event
                        if event.event == "done":
                            return
        except httpx.RequestError as exc:
            raise AdapterError(
                message=f"Network error while streaming prediction {job_id}: {exc}",
                kind=AdapterErrorKind.provider_error,
            ) from exc

    # Transport

    def _decode_prediction(self, raw: dict[str, Any]) -> PredictionJob:
        try:
            return PredictionJob.model_validate(raw)
        except ValidationError as exc:
            raise AdapterError(
                message=f"Malformed prediction record from Replicate: {exc}",
                kind=AdapterErrorKind.provider_error,
            ) from exc

    def _build_transport(self) -> httpx.AsyncBaseTransport:
        if self.transport is not None:
            return self.transport
        return httpx.AsyncHTTPTransport(retries=self.retries)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        transport = self._build_transport()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=transport,
            ) as client:
                response = await client.request(
                    method,
                    path,
                    json=json_payload,
                    params=params,
                    headers=self._headers(),
                )
        except httpx.RequestError as exc:
            raise AdapterError(
                message=f"Network error while calling Replicate: {exc}",
                kind=AdapterErrorKind.provider_error,
            ) from exc

        if response.status_code >= 400:
            raise AdapterError(
                message=f"Replicate API call failed ({response.status_code}): {response.text}",
                kind=AdapterErrorKind.provider_error,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise AdapterError(
                message=f"Replicate returned invalid JSON for {method} {path}",
                kind=AdapterErrorKind.provider_error,
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise AdapterError(
                message=f"Replicate response for {method} {path} must be a JSON object",
                kind=AdapterErrorKind.provider_error,
                status_code=response.status_code,
            )
        return body


def create_replicate_adapter(**overrides: Any) -> ReplicateAdapter:
    config: dict[str, Any] = {
        "api_token": settings.REPLICATE_API_TOKEN,
        "base_url": settings.replicate_base_url,
        "timeout_seconds": settings.REPLICATE_REQUEST_TIMEOUT_SECONDS,
        "retries": settings.REPLICATE_RETRIES,
        "webhook_url": settings.replicate_webhook_url,
        "webhook_secret": settings.REPLICATE_WEBHOOK_SECRET,
        "poll_interval_seconds": settings.PREDICTION_POLL_INTERVAL_SECONDS,
    }
    config.update(overrides)
    return ReplicateAdapter(**config)
