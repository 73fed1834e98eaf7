from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from asset_studio.config import settings
from asset_studio.db import SessionFactory, session_scope
from asset_studio.errors import CatalogError
from asset_studio.models import AiModel, Generation, utcnow
from asset_studio.schema_engine import SchemaEngine, coerce_schema
from asset_studio.schemas import (
    NON_NULLABLE_MODEL_FIELDS,
    TERMINAL_STATUSES,
    FieldSchema,
    ModelCapabilities,
    ModelDescriptor,
    ModelStats,
)

logger = logging.getLogger(__name__)

RECENT_GENERATIONS_WINDOW = 30

_UPDATABLE_FIELDS = {
    "name",
    "provider_model_id",
    "provider_version",
    "input_schema",
    "cost_per_use",
    "avg_latency_ms",
    "status",
    "webhook_events",
}


def _dump_schema(schema: FieldSchema | dict[str, Any]) -> dict[str, Any]:
    return {
        name: spec.model_dump(mode="json", exclude_none=True)
        for name, spec in coerce_schema(schema).items()
    }


def _to_descriptor(row: AiModel) -> ModelDescriptor:
    return ModelDescriptor(
        slug=row.slug,
        name=row.name,
        provider=row.provider,
        media_type=row.media_type,
        provider_model_id=row.provider_model_id,
        provider_version=row.provider_version,
        input_schema=coerce_schema(row.input_schema),
        cost_per_use=row.cost_per_use,
        avg_latency_ms=row.avg_latency_ms,
        status=row.status,
        webhook_events=list(row.webhook_events or []),
    )


class ModelCatalog:
    """TTL-cached view over the ``ai_models`` table.

    Construct one per process and hand it to whoever needs model metadata.
    Entries are re-read from the database once they are older than
    ``ttl_seconds``; stale reads inside the window are accepted.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        schema_engine: SchemaEngine | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._schema_engine = schema_engine
        self._ttl_seconds = settings.MODEL_CATALOG_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, ModelDescriptor]] = {}
        self._refresh_task: asyncio.Task | None = None

    # Lookups

    def get_model(self, slug: str) -> ModelDescriptor | None:
        cached = self._cache.get(slug)
        if cached is not None and self._clock() - cached[0] < self._ttl_seconds:
            return cached[1]

        with session_scope(self._session_factory) as session:
            row = self._find_row(session, slug)
            if row is None:
                self._cache.pop(slug, None)
                return None
            descriptor = _to_descriptor(row)
        self._remember(descriptor)
        return descriptor

    def list_models(
        self,
        *,
        media_type: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        search: str | None = None,
    ) -> list[ModelDescriptor]:
        stmt = select(AiModel)
        if media_type:
            stmt = stmt.where(AiModel.media_type == media_type)
        if provider:
            stmt = stmt.where(AiModel.provider == provider)
        if status:
            stmt = stmt.where(AiModel.status == status)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(
                    AiModel.name.ilike(pattern),
                    AiModel.slug.ilike(pattern),
                    AiModel.media_type.ilike(pattern),
                )
            )
        stmt = stmt.order_by(AiModel.name, AiModel.slug)

        with session_scope(self._session_factory) as session:
            descriptors = [_to_descriptor(row) for row in session.scalars(stmt)]
        for descriptor in descriptors:
            self._remember(descriptor)
        return descriptors

    def get_model_stats(self, slug: str, *, recent: int = RECENT_GENERATIONS_WINDOW) -> ModelStats | None:
        """Generation totals per status, and the success rate over the last ``recent`` finished runs."""
        descriptor = self.get_model(slug)
        if descriptor is None:
            return None

        with session_scope(self._session_factory) as session:
            counts = session.execute(
                select(Generation.status, func.count())
                .where(Generation.model_slug == slug)
                .group_by(Generation.status)
            ).all()
            recent_statuses = session.scalars(
                select(Generation.status)
                .where(Generation.model_slug == slug, Generation.status.in_(sorted(TERMINAL_STATUSES)))
                .order_by(Generation.id.desc())
                .limit(recent)
            ).all()

        status_counts = {status: int(count) for status, count in counts}
        success_rate = None
        if recent_statuses:
            succeeded = sum(1 for status in recent_statuses if status == "succeeded")
            success_rate = round(succeeded / len(recent_statuses), 4)
        return ModelStats(
            model=descriptor,
            generation_count=sum(status_counts.values()),
            status_counts=status_counts,
            recent_success_rate=success_rate,
        )

    def get_model_capabilities(self) -> ModelCapabilities:
        models = self.list_models(status="active")
        return ModelCapabilities(
            providers=sorted({model.provider for model in models}),
            media_types=sorted({model.media_type for model in models}),
        )

    # Management

    def register_model(self, descriptor: ModelDescriptor) -> ModelDescriptor:
        with session_scope(self._session_factory) as session:
            if self._find_row(session, descriptor.slug) is not None:
                raise CatalogError(
                    message=f"Model with slug '{descriptor.slug}' already exists",
                    code="duplicate_slug",
                    status_code=409,
                )
            row = AiModel(
                slug=descriptor.slug,
                name=descriptor.name,
                provider=descriptor.provider,
                media_type=descriptor.media_type,
                status=descriptor.status,
                provider_model_id=descriptor.provider_model_id,
                provider_version=descriptor.provider_version,
                input_schema=_dump_schema(descriptor.input_schema),
                webhook_events=list(descriptor.webhook_events),
                cost_per_use=descriptor.cost_per_use,
                avg_latency_ms=descriptor.avg_latency_ms,
            )
            session.add(row)
            session.flush()
            stored = _to_descriptor(row)
        self._remember(stored)
        logger.info("Registered model %s (%s/%s)", stored.slug, stored.provider, stored.media_type)
        return stored

    def update_model(self, slug: str, **changes: Any) -> ModelDescriptor:
        unknown = set(changes) - _UPDATABLE_FIELDS - {"schema_synced_at"}
        if unknown:
            raise CatalogError(
                message=f"Unsupported model fields: {', '.join(sorted(unknown))}",
                code="invalid_update",
            )
        cleared = sorted(key for key in NON_NULLABLE_MODEL_FIELDS if key in changes and changes[key] is None)
        if cleared:
            raise CatalogError(
                message=f"Fields cannot be null: {', '.join(cleared)}",
                code="invalid_update",
            )
        with session_scope(self._session_factory) as session:
            row = self._find_row(session, slug)
            if row is None:
                raise CatalogError(message=f"Model not found: {slug}", code="model_not_found", status_code=404)
            for key, value in changes.items():
                if key == "input_schema":
                    value = _dump_schema(value)
                elif key == "webhook_events":
                    value = list(value)
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.flush()
            stored = _to_descriptor(row)
        self._remember(stored)
        return stored

    def delete_model(self, slug: str) -> bool:
        with session_scope(self._session_factory) as session:
            row = self._find_row(session, slug)
            if row is None:
                return False
            session.delete(row)
        self._cache.pop(slug, None)
        logger.info("Deleted model %s", slug)
        return True

    async def sync_model_schema(self, slug: str) -> ModelDescriptor:
        descriptor = self.get_model(slug)
        if descriptor is None:
            raise CatalogError(message=f"Model not found: {slug}", code="model_not_found", status_code=404)
        if descriptor.provider != "replicate" or not descriptor.provider_model_id:
            raise CatalogError(
                message=f"Schema sync not supported for model: {slug}",
                code="schema_sync_not_supported",
            )
        if self._schema_engine is None:
            raise CatalogError(
                message="Model catalog has no schema engine configured",
                code="schema_sync_unavailable",
                status_code=503,
            )

        schema = await self._schema_engine.fetch_schema(
            descriptor.provider_model_id,
            descriptor.provider_version or "latest",
        )
        updated = self.update_model(slug, input_schema=schema, schema_synced_at=utcnow())
        logger.info("Schema synced for model %s (%d fields)", slug, len(schema))
        return updated

    # Cache lifecycle

    def invalidate(self, slug: str | None = None) -> None:
        if slug is None:
            self._cache.clear()
        else:
            self._cache.pop(slug, None)

    def refresh(self) -> int:
        self._cache.clear()
        active = self.list_models(status="active")
        logger.info("Model catalog refreshed with %d active models", len(active))
        return len(active)

    def start_auto_refresh(self, interval_seconds: float | None = None) -> asyncio.Task:
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task
        interval = interval_seconds or self._ttl_seconds
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop(interval))
        return self._refresh_task

    async def stop_auto_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.refresh()
            except Exception:
                logger.exception("Model catalog refresh failed")

    def _remember(self, descriptor: ModelDescriptor) -> None:
        self._cache[descriptor.slug] = (self._clock(), descriptor)

    @staticmethod
    def _find_row(session: Session, slug: str) -> AiModel | None:
        return session.scalars(select(AiModel).where(AiModel.slug == slug)).first()
