import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ASSET_STUDIO_DB_URL", "sqlite:///./test_asset_studio.db")
os.environ.setdefault("ASSET_STUDIO_INTERNAL_API_TOKEN", "internal_token")
os.environ.setdefault("REPLICATE_API_TOKEN", "r8_test_token")
os.environ.setdefault("REPLICATE_WEBHOOK_URL", "https://example.ngrok.app/webhooks/replicate")
os.environ.pop("REPLICATE_WEBHOOK_SECRET", None)
