from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete, select

import asset_studio.main as main_module
from asset_studio.db import SessionLocal, init_db
from asset_studio.errors import AdapterError, AdapterErrorKind
from asset_studio.models import AiModel, Generation
from asset_studio.replicate_adapter import ReplicateAdapter
from asset_studio.security import compute_webhook_signature

AUTH_HEADERS = {"Authorization": "Bearer internal_token"}

FLUX_MODEL = {
    "slug": "flux-schnell",
    "name": "Flux Schnell",
    "media_type": "image",
    "provider_model_id": "black-forest-labs/flux-schnell",
    "cost_per_use": 0.03,
    "input_schema": {
        "prompt": {"type": "string", "required": True},
        "num_outputs": {"type": "integer", "min": 1, "max": 4, "default": 1},
    },
}


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    session.execute(delete(Generation))
    session.execute(delete(AiModel))
    session.commit()
    main_module.app.state.catalog.invalidate()
    try:
        yield session
    finally:
        session.execute(delete(Generation))
        session.execute(delete(AiModel))
        session.commit()
        session.close()
        main_module.app.state.catalog.invalidate()


@pytest.fixture()
def adapter():
    instance = ReplicateAdapter(
        api_token="r8_test_token",
        base_url="https://api.replicate.test/v1",
        poll_interval_seconds=0,
        schema_engine=main_module.app.state.schema_engine,
    )
    main_module.app.dependency_overrides[main_module.get_adapter] = lambda: instance
    try:
        yield instance
    finally:
        main_module.app.dependency_overrides.pop(main_module.get_adapter, None)


@pytest.fixture()
def api_client():
    with TestClient(main_module.app) as client:
        yield client


def _register_flux(api_client) -> None:
    response = api_client.post("/models", json=FLUX_MODEL, headers=AUTH_HEADERS)
    assert response.status_code == 201


def test_health(api_client):
    response = api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_register_model_requires_internal_token(api_client, db_session):
    response = api_client.post("/models", json=FLUX_MODEL)
    assert response.status_code == 401

    response = api_client.post("/models", json=FLUX_MODEL, headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 403


def test_register_list_and_get_model(api_client, db_session):
    _register_flux(api_client)

    duplicate = api_client.post("/models", json=FLUX_MODEL, headers=AUTH_HEADERS)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "duplicate_slug"

    listed = api_client.get("/models", params={"media_type": "image", "status": "active"})
    assert listed.status_code == 200
    assert [item["slug"] for item in listed.json()] == ["flux-schnell"]

    fetched = api_client.get("/models/flux-schnell")
    assert fetched.status_code == 200
    assert fetched.json()["input_schema"]["prompt"]["required"] is True

    assert api_client.get("/models/missing").status_code == 404


def test_update_and_delete_model(api_client, db_session):
    _register_flux(api_client)

    updated = api_client.patch("/models/flux-schnell", json={"cost_per_use": 0.05}, headers=AUTH_HEADERS)
    assert updated.status_code == 200
    assert updated.json()["cost_per_use"] == 0.05

    empty = api_client.patch("/models/flux-schnell", json={}, headers=AUTH_HEADERS)
    assert empty.status_code == 422

    deleted = api_client.delete("/models/flux-schnell", headers=AUTH_HEADERS)
    assert deleted.status_code == 200
    assert api_client.delete("/models/flux-schnell", headers=AUTH_HEADERS).status_code == 404


def test_update_model_rejects_null_status_and_schema(api_client, db_session):
    _register_flux(api_client)

    null_status = api_client.patch("/models/flux-schnell", json={"status": None}, headers=AUTH_HEADERS)
    assert null_status.status_code == 422

    null_schema = api_client.patch("/models/flux-schnell", json={"input_schema": None}, headers=AUTH_HEADERS)
    assert null_schema.status_code == 422

    fetched = api_client.get("/models/flux-schnell").json()
    assert fetched["status"] == "active"
    assert set(fetched["input_schema"]) == {"prompt", "num_outputs"}


def test_model_stats_and_capabilities(api_client, db_session):
    _register_flux(api_client)
    db_session.add(Generation(prediction_id="pred_1", model_slug="flux-schnell", status="succeeded", input={}))
    db_session.add(Generation(prediction_id="pred_2", model_slug="flux-schnell", status="failed", input={}))
    db_session.add(Generation(prediction_id="pred_3", model_slug="flux-schnell", status="processing", input={}))
    db_session.commit()

    stats = api_client.get("/models/flux-schnell/stats")
    assert stats.status_code == 200
    payload = stats.json()
    assert payload["model"]["slug"] == "flux-schnell"
    assert payload["generation_count"] == 3
    assert payload["status_counts"] == {"succeeded": 1, "failed": 1, "processing": 1}
    assert payload["recent_success_rate"] == 0.5

    assert api_client.get("/models/missing/stats").status_code == 404

    capabilities = api_client.get("/models/capabilities")
    assert capabilities.status_code == 200
    assert capabilities.json() == {"providers": ["replicate"], "media_types": ["image"]}


def test_startup_starts_catalog_auto_refresh(db_session):
    catalog = main_module.app.state.catalog

    with TestClient(main_module.app) as client:
        assert client.get("/health").status_code == 200
        task = catalog._refresh_task
        assert task is not None
        assert not task.done()

    assert catalog._refresh_task is None


def test_validate_model_input(api_client, db_session):
    _register_flux(api_client)

    valid = api_client.post("/models/flux-schnell/validate", json={"input": {"prompt": "a fox", "num_outputs": "2"}})
    assert valid.status_code == 200
    assert valid.json()["valid"] is True
    assert valid.json()["sanitized_input"] == {"prompt": "a fox", "num_outputs": 2}

    invalid = api_client.post("/models/flux-schnell/validate", json={"input": {"num_outputs": 7}})
    assert invalid.status_code == 200
    payload = invalid.json()
    assert payload["valid"] is False
    assert {issue["field"] for issue in payload["errors"]} == {"prompt", "num_outputs"}


def test_estimate_prediction_cost(api_client, db_session, adapter):
    _register_flux(api_client)

    response = api_client.post(
        "/predictions/estimate",
        json={"model_slug": "flux-schnell", "input": {"num_outputs": 4}},
    )

    assert response.status_code == 200
    assert response.json()["estimated_cost"] == pytest.approx(0.12)
    assert response.json()["currency"] == "USD"


def test_create_prediction_records_generation(api_client, db_session, adapter):
    _register_flux(api_client)

    async def fake_request_json(method: str, path: str, *, json_payload=None, params=None):
        assert (method, path) == ("POST", "/predictions")
        return {"id": "pred_1", "status": "starting", "input": json_payload["input"]}

    adapter._request_json = fake_request_json  # type: ignore[method-assign]

    response = api_client.post(
        "/predictions",
        json={
            "model_slug": "flux-schnell",
            "input": {"prompt": "a fox", "num_outputs": 2},
            "project_id": "proj_1",
            "field_id": "hero_image",
        },
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["prediction_id"] == "pred_1"
    assert payload["status"] == "starting"
    assert payload["estimated_cost"] == pytest.approx(0.06)

    generation = db_session.scalars(select(Generation).where(Generation.prediction_id == "pred_1")).first()
    assert generation is not None
    assert generation.project_id == "proj_1"
    assert generation.input == {"prompt": "a fox", "num_outputs": 2}


def test_create_prediction_invalid_input_returns_field_errors(api_client, db_session, adapter):
    _register_flux(api_client)

    response = api_client.post("/predictions", json={"model_slug": "flux-schnell", "input": {"num_outputs": 2}})

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["kind"] == "invalid_input"
    assert detail["errors"][0]["field"] == "prompt"


def test_create_prediction_provider_failure_is_generic(api_client, db_session, adapter):
    _register_flux(api_client)

    async def fake_request_json(method: str, path: str, *, json_payload=None, params=None):
        raise AdapterError(
            message="Replicate API call failed (500): internal",
            kind=AdapterErrorKind.provider_error,
            status_code=500,
        )

    adapter._request_json = fake_request_json  # type: ignore[method-assign]

    response = api_client.post("/predictions", json={"model_slug": "flux-schnell", "input": {"prompt": "a fox"}})

    assert response.status_code == 502
    assert response.json()["detail"]["kind"] == "provider_error"
    assert "try again" in response.json()["detail"]["message"]
    assert db_session.scalars(select(Generation)).first() is None


def test_create_prediction_batch(api_client, db_session, adapter):
    _register_flux(api_client)

    async def fake_request_json(method: str, path: str, *, json_payload=None, params=None):
        prompt = json_payload["input"]["prompt"]
        return {"id": f"pred_{prompt}", "status": "starting", "input": json_payload["input"]}

    adapter._request_json = fake_request_json  # type: ignore[method-assign]

    response = api_client.post(
        "/predictions/batch",
        json={"model_slug": "flux-schnell", "inputs": [{"prompt": "one"}, None, {"prompt": "two", "num_outputs": 3}]},
    )

    assert response.status_code == 201
    generations = response.json()["generations"]
    assert [item["prediction_id"] for item in generations] == ["pred_one", "pred_two"]
    assert generations[1]["estimated_cost"] == pytest.approx(0.09)


def test_get_prediction_updates_generation(api_client, db_session, adapter):
    db_session.add(Generation(prediction_id="pred_1", model_slug="flux-schnell", status="processing", input={}))
    db_session.commit()

    async def fake_request_json(method: str, path: str, *, json_payload=None, params=None):
        return {
            "id": "pred_1",
            "status": "succeeded",
            "input": {},
            "output": ["https://replicate.delivery/out.png"],
            "metrics": {"predict_time": 2.5},
        }

    adapter._request_json = fake_request_json  # type: ignore[method-assign]

    response = api_client.get("/predictions/pred_1")

    assert response.status_code == 200
    assert response.json()["status"] == "succeeded"
    db_session.expire_all()
    generation = db_session.scalars(select(Generation).where(Generation.prediction_id == "pred_1")).one()
    assert generation.status == "succeeded"
    assert generation.output == ["https://replicate.delivery/out.png"]
    assert generation.completed_at is not None


def test_cancel_prediction(api_client, adapter):
    async def fake_request_json(method: str, path: str, *, json_payload=None, params=None):
        return {"id": "pred_1", "status": "canceled"}

    adapter._request_json = fake_request_json  # type: ignore[method-assign]

    response = api_client.post("/predictions/pred_1/cancel")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_webhook_applies_terminal_status_once(api_client, db_session):
    db_session.add(Generation(prediction_id="pred_1", model_slug="flux-schnell", status="starting", input={}))
    db_session.commit()

    succeeded = json.dumps({"id": "pred_1", "status": "succeeded", "output": "https://replicate.delivery/a.png"})
    response = api_client.post("/webhooks/replicate", content=succeeded)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "tracked": True, "applied": True}

    late = json.dumps({"id": "pred_1", "status": "processing"})
    response = api_client.post("/webhooks/replicate", content=late)
    assert response.json() == {"ok": True, "tracked": True, "applied": False}

    db_session.expire_all()
    generation = db_session.scalars(select(Generation).where(Generation.prediction_id == "pred_1")).one()
    assert generation.status == "succeeded"
    assert generation.output == "https://replicate.delivery/a.png"


def test_webhook_for_untracked_prediction(api_client, db_session):
    response = api_client.post("/webhooks/replicate", content=json.dumps({"id": "pred_x", "status": "failed"}))

    assert response.status_code == 200
    assert response.json() == {"ok": True, "tracked": False}


def test_webhook_rejects_bad_signature_and_bad_payload(api_client, db_session, monkeypatch):
    monkeypatch.setattr(main_module.settings, "REPLICATE_WEBHOOK_SECRET", "whsec_test")
    body = json.dumps({"id": "pred_1", "status": "succeeded"}).encode("utf-8")

    rejected = api_client.post("/webhooks/replicate", content=body, headers={"webhook-signature": "sha256=00"})
    assert rejected.status_code == 401

    signature = compute_webhook_signature(secret="whsec_test", body=body)
    accepted = api_client.post("/webhooks/replicate", content=body, headers={"webhook-signature": signature})
    assert accepted.status_code == 200

    garbage = b"not json"
    malformed = api_client.post(
        "/webhooks/replicate",
        content=garbage,
        headers={"webhook-signature": compute_webhook_signature(secret="whsec_test", body=garbage)},
    )
    assert malformed.status_code == 400


def test_webhook_does_not_need_provider_token(api_client, db_session, monkeypatch):
    monkeypatch.setattr(main_module.settings, "REPLICATE_API_TOKEN", None)
    monkeypatch.setattr(main_module.app.state, "adapter", None)
    db_session.add(Generation(prediction_id="pred_1", model_slug="flux-schnell", status="processing", input={}))
    db_session.commit()

    assert api_client.get("/predictions/pred_1").status_code == 503

    body = json.dumps({"id": "pred_1", "status": "failed", "error": "NSFW"})
    response = api_client.post("/webhooks/replicate", content=body)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "tracked": True, "applied": True}
    db_session.expire_all()
    generation = db_session.scalars(select(Generation).where(Generation.prediction_id == "pred_1")).one()
    assert generation.status == "failed"
    assert generation.error == "NSFW"
