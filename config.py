import os

from dotenv import load_dotenv

load_dotenv()

BG_REMOVE_PROVIDERS = ("auto", "removebg", "rembg")


def provider_or_default(value):
    """Unknown or empty provider names fall back to auto."""
    value = (value or "").strip().lower()
    return value if value in BG_REMOVE_PROVIDERS else "auto"


# -----------------------------
# ENV / CONFIG
# -----------------------------
API_KEY = os.environ.get("API_KEY", None)

ARK_API_KEY = os.environ.get("ARK_API_KEY", None)
ARK_BASE_URL = os.environ.get("ARK_BASE_URL", "https://ark.cn-beijing.volces.com/api/v3").rstrip("/")
ARK_VISION_MODEL = os.environ.get("ARK_VISION_MODEL", "ep-20251027102231-jv69q")
ARK_IMAGE_MODEL = os.environ.get("ARK_IMAGE_MODEL", "ep-20251028173230-vq69v")

REMOVE_BG_API_KEY = os.environ.get("REMOVE_BG_API_KEY", None)
REMOVE_BG_URL = os.environ.get("REMOVE_BG_URL", "https://api.remove.bg/v1.0/removebg")
BG_REMOVE_PROVIDER = provider_or_default(os.environ.get("BG_REMOVE_PROVIDER"))
REMBG_MODEL = os.environ.get("REMBG_MODEL", "u2net")

UPSTREAM_TIMEOUT = float(os.environ.get("UPSTREAM_TIMEOUT", 60))

MAX_FILE_SIZE = int(os.environ.get("MAX_FILE_SIZE_MB", 10)) * 1024 * 1024
DEFAULT_QUALITY = int(os.environ.get("DEFAULT_QUALITY", 80))
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

DEBUG = os.environ.get("FLASK_DEBUG", "False").lower() == "true"
PORT = int(os.environ.get("PORT", 5000))
