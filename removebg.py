from io import BytesIO

import requests
from PIL import Image, UnidentifiedImageError
from rembg import new_session, remove as rembg_remove

import config

PROVIDERS = set(config.BG_REMOVE_PROVIDERS)
REMOVE_BG_SIZES = {"auto", "preview", "small", "regular", "medium", "hd", "full", "4k"}

REMBG_SESSION = None


class RemoveBgError(Exception):
    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message


# -----------------------------
# REMOTE: remove.bg
# -----------------------------
def _first_error_title(resp) -> str:
    try:
        errors = resp.json().get("errors") or []
        if errors and errors[0].get("title"):
            return errors[0]["title"]
    except (ValueError, AttributeError):
        pass
    return resp.reason or f"HTTP {resp.status_code}"


def remove_background_removebg(img_bytes: bytes, filename: str = "image.png", size: str = "auto") -> Image.Image:
    if not config.REMOVE_BG_API_KEY:
        raise RemoveBgError(500, "REMOVE_BG_API_KEY not configured")

    resp = requests.post(
        config.REMOVE_BG_URL,
        headers={"X-Api-Key": config.REMOVE_BG_API_KEY},
        files={"image_file": (filename or "image.png", img_bytes)},
        data={"size": size},
        timeout=config.UPSTREAM_TIMEOUT,
    )
    if not resp.ok:
        raise RemoveBgError(resp.status_code, f"remove.bg call failed: {_first_error_title(resp)}")

    try:
        return Image.open(BytesIO(resp.content)).convert("RGBA")
    except (UnidentifiedImageError, OSError):
        raise RemoveBgError(resp.status_code, "remove.bg returned an unreadable image")


# -----------------------------
# LOCAL: rembg
# -----------------------------
def _get_rembg_session():
    global REMBG_SESSION
    if REMBG_SESSION is None:
        REMBG_SESSION = new_session(config.REMBG_MODEL)
    return REMBG_SESSION


def remove_background_local(img: Image.Image) -> Image.Image:
    out = rembg_remove(img.convert("RGBA"), session=_get_rembg_session(), post_process_mask=True)
    return out.convert("RGBA")


# -----------------------------
# DISPATCH
# -----------------------------
def remove_background(img: Image.Image, img_bytes: bytes, filename: str = "", size: str = "auto",
                      provider: str = None, log=None):
    """
    Cut the subject out of an image.

    provider:
      - removebg: remote only, errors propagate
      - rembg: local model only
      - auto: remote when a key is configured, local otherwise or when the remote fails
    Returns: (rgba_image, method_used, fallback_used)
    """
    log = log or (lambda *a, **k: None)
    provider = (provider or config.BG_REMOVE_PROVIDER).strip().lower()
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider {provider!r}")

    if provider == "rembg" or (provider == "auto" and not config.REMOVE_BG_API_KEY):
        out = remove_background_local(img)
        log("bg_remove_rembg", success=True, model=config.REMBG_MODEL)
        return out, "rembg", False

    try:
        out = remove_background_removebg(img_bytes, filename=filename, size=size)
        log("bg_remove_removebg", success=True, size=size)
        return out, "removebg", False
    except (RemoveBgError, requests.RequestException) as e:
        log("bg_remove_removebg", success=False, error=str(e))
        if provider == "removebg":
            raise

    out = remove_background_local(img)
    log("bg_remove_rembg", success=True, model=config.REMBG_MODEL, fallback=True)
    return out, "rembg_fallback", True
