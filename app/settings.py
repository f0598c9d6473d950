import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
providers_ms_url = os.environ.get("PROVIDERS_MS_URL", "http://localhost:8001")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
SLOTS_CACHE_TTL = int(os.environ.get("SLOTS_CACHE_TTL", "60"))

midtrans_server_key = os.environ.get("MIDTRANS_SERVER_KEY", "")
midtrans_snap_url = os.environ.get(
    "MIDTRANS_SNAP_URL", "https://app.sandbox.midtrans.com/snap/v1"
)
midtrans_api_url = os.environ.get(
    "MIDTRANS_API_URL", "https://api.sandbox.midtrans.com/v2"
)
site_url = os.environ.get("SITE_URL", "http://localhost:3000")

DISPLAY_TIMEZONE = os.environ.get("DISPLAY_TIMEZONE", "Asia/Jakarta")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

TORTOISE_ORM = {
    "connections": {"default": db_url},
    "apps": {
        "models": {
            "models": ["app.models"],
            "default_connection": "default",
        }
    },
    "use_tz": True,
    "timezone": "UTC",
}
