import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_USERNAME = os.getenv("REDIS_USERNAME", "default")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_CONNECT_TIMEOUT = float(os.getenv("REDIS_CONNECT_TIMEOUT", 10))
REDIS_RETRIES = int(os.getenv("REDIS_RETRIES", 20))

# production refuses to start without Redis, development runs without history
APP_ENV = os.getenv("APP_ENV", "development")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

UPLOADS_DIR = os.getenv("UPLOADS_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 10 * 1024 * 1024))
ALLOWED_IMAGE_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

DEFAULT_MESSAGE_TTL = int(os.getenv("DEFAULT_MESSAGE_TTL", 86400))
BURN_NOTICE_DELAY = float(os.getenv("BURN_NOTICE_DELAY", 2))
BURN_BLOB_GRACE = float(os.getenv("BURN_BLOB_GRACE", 30))

BLOB_MAX_AGE_SECONDS = int(os.getenv("BLOB_MAX_AGE_SECONDS", 25 * 3600))
BLOB_SWEEP_INTERVAL = int(os.getenv("BLOB_SWEEP_INTERVAL", 3600))
STORE_SWEEP_INTERVAL = int(os.getenv("STORE_SWEEP_INTERVAL", 3600))
