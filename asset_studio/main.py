from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import ORJSONResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from asset_studio.catalog import ModelCatalog
from asset_studio.config import settings
from asset_studio.db import SessionLocal, get_session, init_db
from asset_studio.errors import AdapterError, AdapterErrorKind, CatalogError
from asset_studio.models import Generation, utcnow
from asset_studio.replicate_adapter import ReplicateAdapter, create_replicate_adapter
from asset_studio.schema_engine import SchemaEngine
from asset_studio.schemas import (
    TERMINAL_STATUSES,
    BatchPredictionRequest,
    BatchPredictionResponse,
    CreatePredictionRequest,
    EstimateCostRequest,
    EstimateCostResponse,
    GenerationResponse,
    ModelCapabilities,
    ModelDescriptor,
    ModelStats,
    PredictionJob,
    RegisterModelRequest,
    UpdateModelRequest,
    ValidateInputRequest,
    ValidationResult,
)
from asset_studio.security import check_webhook_signature, require_internal_api_token

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = "webhook-signature"

app = FastAPI(title="Asset Studio", default_response_class=ORJSONResponse)
app.state.schema_engine = SchemaEngine()
app.state.catalog = ModelCatalog(session_factory=SessionLocal, schema_engine=app.state.schema_engine)
app.state.adapter = None


@app.on_event("startup")
async def startup() -> None:
    init_db()
    app.state.catalog.start_auto_refresh()


@app.on_event("shutdown")
async def shutdown() -> None:
    await app.state.catalog.stop_auto_refresh()


def get_schema_engine(request: Request) -> SchemaEngine:
    return request.app.state.schema_engine


def get_catalog(request: Request) -> ModelCatalog:
    return request.app.state.catalog


def get_adapter(request: Request) -> ReplicateAdapter:
    adapter = request.app.state.adapter
    if adapter is None:
        try:
            adapter = create_replicate_adapter(schema_engine=request.app.state.schema_engine)
        except AdapterError as exc:
            logger.error("Replicate adapter is not configured: %s", exc)
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
        request.app.state.adapter = adapter
    return adapter


def _adapter_http_error(exc: AdapterError) -> HTTPException:
    if exc.kind == AdapterErrorKind.invalid_input:
        return HTTPException(
            status_code=exc.http_status,
            detail={"kind": exc.kind.value, "message": exc.message, "errors": exc.errors},
        )
    if exc.kind == AdapterErrorKind.configuration_error:
        return HTTPException(status_code=exc.http_status, detail={"kind": exc.kind.value, "message": exc.message})
    logger.error("Provider failure (kind=%s, upstream_status=%s): %s", exc.kind.value, exc.status_code, exc.message)
    return HTTPException(
        status_code=exc.http_status,
        detail={
            "kind": exc.kind.value,
            "message": "The generation provider could not complete the request. Please try again.",
        },
    )


def _catalog_http_error(exc: CatalogError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": str(exc)})


def _require_model(catalog: ModelCatalog, slug: str) -> ModelDescriptor:
    model = catalog.get_model(slug)
    if model is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Model not found: {slug}")
    return model


def _serialize_generation(generation: Generation) -> GenerationResponse:
    return GenerationResponse(
        prediction_id=generation.prediction_id,
        model_slug=generation.model_slug,
        status=generation.status,
        estimated_cost=generation.estimated_cost,
        output=generation.output,
        error=generation.error,
        project_id=generation.project_id,
        field_id=generation.field_id,
        created_at=generation.created_at,
        updated_at=generation.updated_at,
        completed_at=generation.completed_at,
    )


def _record_generation(
    session: Session,
    *,
    job: PredictionJob,
    model_slug: str,
    estimated_cost: float | None,
    project_id: str | None,
    field_id: str | None,
) -> Generation:
    generation = Generation(
        prediction_id=job.id,
        model_slug=model_slug,
        status=job.status,
        input=job.to_payload()["input"],
        estimated_cost=estimated_cost,
        project_id=project_id,
        field_id=field_id,
    )
    _apply_job(generation, job)
    session.add(generation)
    return generation


def _apply_job(generation: Generation, job: PredictionJob) -> bool:
    if generation.status in TERMINAL_STATUSES and job.status not in TERMINAL_STATUSES:
        return False
    payload = job.to_payload()
    generation.status = job.status
    generation.output = payload.get("output")
    generation.error = job.error
    if "metrics" in payload:
        generation.metrics = payload["metrics"]
    if job.is_terminal:
        generation.completed_at = job.completed_at or utcnow()
    generation.updated_at = utcnow()
    return True


def _find_generation(session: Session, prediction_id: str) -> Generation | None:
    return session.scalars(select(Generation).where(Generation.prediction_id == prediction_id)).first()


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.get("/health/provider")
async def provider_health(adapter: ReplicateAdapter = Depends(get_adapter)) -> dict[str, bool]:
    return {"ok": await adapter.health_check()}


@app.get("/models", response_model=list[ModelDescriptor])
def list_models(
    media_type: str | None = None,
    provider: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    catalog: ModelCatalog = Depends(get_catalog),
):
    return catalog.list_models(media_type=media_type, provider=provider, status=status_filter, search=search)


@app.get("/models/capabilities", response_model=ModelCapabilities)
def get_model_capabilities(catalog: ModelCatalog = Depends(get_catalog)):
    return catalog.get_model_capabilities()


@app.get("/models/{slug}", response_model=ModelDescriptor)
def get_model(slug: str, catalog: ModelCatalog = Depends(get_catalog)):
    return _require_model(catalog, slug)


@app.get("/models/{slug}/stats", response_model=ModelStats)
def get_model_stats(slug: str, catalog: ModelCatalog = Depends(get_catalog)):
    stats = catalog.get_model_stats(slug)
    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Model not found: {slug}")
    return stats


@app.post(
    "/models",
    response_model=ModelDescriptor,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_token)],
)
def register_model(payload: RegisterModelRequest, catalog: ModelCatalog = Depends(get_catalog)):
    try:
        return catalog.register_model(ModelDescriptor.model_validate(payload.model_dump()))
    except CatalogError as exc:
        raise _catalog_http_error(exc) from exc


@app.patch("/models/{slug}", response_model=ModelDescriptor, dependencies=[Depends(require_internal_api_token)])
def update_model(slug: str, payload: UpdateModelRequest, catalog: ModelCatalog = Depends(get_catalog)):
    changes = {key: getattr(payload, key) for key in payload.model_fields_set}
    try:
        return catalog.update_model(slug, **changes)
    except CatalogError as exc:
        raise _catalog_http_error(exc) from exc


@app.delete("/models/{slug}", dependencies=[Depends(require_internal_api_token)])
def delete_model(slug: str, catalog: ModelCatalog = Depends(get_catalog)) -> dict[str, bool]:
    if not catalog.delete_model(slug):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Model not found: {slug}")
    return {"ok": True}


@app.post("/models/{slug}/sync", response_model=ModelDescriptor, dependencies=[Depends(require_internal_api_token)])
async def sync_model_schema(slug: str, catalog: ModelCatalog = Depends(get_catalog)):
    try:
        return await catalog.sync_model_schema(slug)
    except CatalogError as exc:
        raise _catalog_http_error(exc) from exc
    except AdapterError as exc:
        raise _adapter_http_error(exc) from exc


@app.post("/models/{slug}/validate", response_model=ValidationResult)
def validate_model_input(
    slug: str,
    payload: ValidateInputRequest,
    catalog: ModelCatalog = Depends(get_catalog),
    schema_engine: SchemaEngine = Depends(get_schema_engine),
):
    model = _require_model(catalog, slug)
    return schema_engine.validate_input(model.input_schema, payload.input)


@app.post("/predictions/estimate", response_model=EstimateCostResponse)
def estimate_prediction_cost(
    payload: EstimateCostRequest,
    catalog: ModelCatalog = Depends(get_catalog),
    adapter: ReplicateAdapter = Depends(get_adapter),
):
    model = _require_model(catalog, payload.model_slug)
    return EstimateCostResponse(
        model_slug=model.slug,
        estimated_cost=adapter.estimate_cost(model, payload.input),
    )


@app.post("/predictions", response_model=GenerationResponse, status_code=status.HTTP_201_CREATED)
async def create_prediction(
    payload: CreatePredictionRequest,
    session: Session = Depends(get_session),
    catalog: ModelCatalog = Depends(get_catalog),
    adapter: ReplicateAdapter = Depends(get_adapter),
):
    model = _require_model(catalog, payload.model_slug)
    try:
        job = await adapter.run(model, payload.input)
    except AdapterError as exc:
        raise _adapter_http_error(exc) from exc

    generation = _record_generation(
        session,
        job=job,
        model_slug=model.slug,
        estimated_cost=adapter.estimate_cost(model, payload.input),
        project_id=payload.project_id,
        field_id=payload.field_id,
    )
    session.commit()
    return _serialize_generation(generation)


@app.post("/predictions/batch", response_model=BatchPredictionResponse, status_code=status.HTTP_201_CREATED)
async def create_prediction_batch(
    payload: BatchPredictionRequest,
    session: Session = Depends(get_session),
    catalog: ModelCatalog = Depends(get_catalog),
    adapter: ReplicateAdapter = Depends(get_adapter),
):
    model = _require_model(catalog, payload.model_slug)
    try:
        jobs = await adapter.run_batch(model, payload.inputs)
    except AdapterError as exc:
        raise _adapter_http_error(exc) from exc

    submitted = [item for item in payload.inputs if item is not None]
    generations = [
        _record_generation(
            session,
            job=job,
            model_slug=model.slug,
            estimated_cost=adapter.estimate_cost(model, item),
            project_id=payload.project_id,
            field_id=payload.field_id,
        )
        for job, item in zip(jobs, submitted)
    ]
    session.commit()
    return BatchPredictionResponse(generations=[_serialize_generation(item) for item in generations])


@app.get("/predictions/{prediction_id}")
async def get_prediction(
    prediction_id: str,
    session: Session = Depends(get_session),
    adapter: ReplicateAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    try:
        job = await adapter.get_status(prediction_id)
    except AdapterError as exc:
        raise _adapter_http_error(exc) from exc

    generation = _find_generation(session, prediction_id)
    if generation is not None and _apply_job(generation, job):
        session.commit()
    return job.to_payload()


@app.post("/predictions/{prediction_id}/cancel")
async def cancel_prediction(
    prediction_id: str,
    adapter: ReplicateAdapter = Depends(get_adapter),
) -> dict[str, bool]:
    return {"ok": await adapter.cancel(prediction_id)}


@app.post("/webhooks/replicate")
async def replicate_webhook(
    request: Request,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    raw_body = await request.body()
    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
    if not check_webhook_signature(
        secret=settings.REPLICATE_WEBHOOK_SECRET,
        body=raw_body,
        supplied_signature=signature,
    ):
        logger.warning("Rejected Replicate webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        job = PredictionJob.model_validate(json.loads(raw_body))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc

    logger.info("Received webhook for prediction %s with status %s", job.id, job.status)
    generation = _find_generation(session, job.id)
    if generation is None:
        return {"ok": True, "tracked": False}
    applied = _apply_job(generation, job)
    if applied:
        session.commit()
    return {"ok": True, "tracked": True, "applied": applied}
