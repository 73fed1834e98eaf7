from __future__ import annotations

import pytest
from pydantic import ValidationError

from asset_studio.config import Settings


def test_production_requires_webhook_secret():
    with pytest.raises(ValidationError, match="REPLICATE_WEBHOOK_SECRET is required"):
        Settings(ENVIRONMENT="production", REPLICATE_WEBHOOK_SECRET=None)


def test_production_can_opt_into_unsigned_webhooks():
    config = Settings(ENVIRONMENT="production", REPLICATE_ALLOW_UNSIGNED_WEBHOOKS=True)

    assert config.is_production
    assert config.REPLICATE_WEBHOOK_SECRET is None


def test_blank_tokens_are_treated_as_unset():
    config = Settings(REPLICATE_API_TOKEN="   ", REPLICATE_WEBHOOK_SECRET="")

    assert config.REPLICATE_API_TOKEN is None
    assert config.REPLICATE_WEBHOOK_SECRET is None


def test_negative_retries_are_rejected():
    with pytest.raises(ValidationError, match="REPLICATE_RETRIES must be >= 0"):
        Settings(REPLICATE_RETRIES=-1)


def test_base_url_is_normalized():
    config = Settings(REPLICATE_BASE_URL="https://replicate.internal.test/v1/")

    assert config.replicate_base_url == "https://replicate.internal.test/v1"
