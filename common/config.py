import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: local / gcp / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

GCS_BUCKET = os.getenv("GCS_BUCKET")
AZURE_STORAGE_CONNECTION_STRING = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
AZURE_CONTAINER = os.getenv("AZURE_CONTAINER")

LOCAL_DATA_DIR = Path(os.getenv("LOCAL_DATA_DIR", str(BASE_DIR / "data")))

# Signed result URLs stay valid for a week
SIGNED_URL_TTL_DAYS = int(os.getenv("SIGNED_URL_TTL_DAYS", "7"))

# fal.ai providers
FAL_API_KEY = os.getenv("FAL_API_KEY")
FAL_RUN_BASE = os.getenv("FAL_RUN_BASE", "https://fal.run")
FAL_QUEUE_BASE = os.getenv("FAL_QUEUE_BASE", "https://queue.fal.run")
FAL_REQUEST_TIMEOUT = float(os.getenv("FAL_REQUEST_TIMEOUT", "120"))

DEBUG = os.getenv("DEBUG", "0") == "1"

# HTTP entry point
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
