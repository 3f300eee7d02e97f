from io import BytesIO

import cv2
import numpy as np
from PIL import Image

MIN_QUALITY = 10
MAX_QUALITY = 100

_EXIF_ORIENTATION = 274
_ORIENTATION_ROTATION = {3: 180, 6: 270, 8: 90}


# -----------------------------
# IO / TRANSPARENCY
# -----------------------------
def open_image_bytes(img_bytes: bytes) -> Image.Image:
    img = Image.open(BytesIO(img_bytes))
    # Phones store rotation in EXIF instead of the pixels (best-effort)
    try:
        orientation = img.getexif().get(_EXIF_ORIENTATION)
        angle = _ORIENTATION_ROTATION.get(orientation)
        if angle:
            img = img.rotate(angle, expand=True)
    except Exception:
        pass
    return img


def has_transparency(img_bytes: bytes) -> bool:
    img = open_image_bytes(img_bytes)
    if img.mode in ("RGBA", "LA"):
        alpha = np.array(img.getchannel("A"))
        return bool(np.any(alpha < 255))
    return "transparency" in img.info


# -----------------------------
# COMPRESSION
# -----------------------------
def parse_quality(value, default: int) -> int:
    """Parse a quality percent from a form field; raises ValueError when out of range."""
    if value is None or str(value).strip() == "":
        return default
    try:
        quality = int(str(value).strip())
    except ValueError:
        raise ValueError(f"quality must be an integer, got {value!r}")
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ValueError(f"quality must be between {MIN_QUALITY} and {MAX_QUALITY}")
    return quality


def _flatten_on_white(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def compress_image(img_bytes: bytes, quality: int):
    """
    Re-encode an image as JPEG at `quality` percent, keeping its dimensions.
    Returns: (jpeg_bytes, meta)
    """
    img = _flatten_on_white(open_image_bytes(img_bytes))

    out = BytesIO()
    img.save(out, format="JPEG", quality=quality)
    jpeg = out.getvalue()

    meta = {
        "quality": quality,
        "width": img.width,
        "height": img.height,
        "original_bytes": len(img_bytes),
        "compressed_bytes": len(jpeg),
        "ratio": round(len(jpeg) / max(1, len(img_bytes)), 4),
    }
    return jpeg, meta


# -----------------------------
# CUT-OUT POST-PROCESSING (trim + defringe)
# -----------------------------
def trim_transparent(img: Image.Image, padding: int = 2) -> Image.Image:
    img = img.convert("RGBA")
    alpha = np.array(img.getchannel("A"))
    ys, xs = np.nonzero(alpha)
    if xs.size == 0:
        return img
    left = max(0, int(xs.min()) - padding)
    top = max(0, int(ys.min()) - padding)
    right = min(img.width, int(xs.max()) + 1 + padding)
    bottom = min(img.height, int(ys.max()) + 1 + padding)
    return img.crop((left, top, right, bottom))


def _defringe(rgba: np.ndarray, radius: int = 2) -> np.ndarray:
    """
    Replace the colour of semi-transparent edge pixels with that of nearby
    opaque pixels, so cut-outs don't keep a halo of the old background.
    """
    if radius <= 0:
        return rgba

    alpha = rgba[:, :, 3]
    opaque = (alpha >= 240).astype(np.uint8) * 255
    if not opaque.any():
        return rgba

    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (radius * 2 + 1, radius * 2 + 1))
    near_opaque = cv2.dilate(opaque, kernel, iterations=1) > 0

    borrowed = rgba[:, :, :3].copy()
    borrowed[alpha < 240] = 0
    for _ in range(radius):
        borrowed = cv2.dilate(borrowed, kernel, iterations=1)

    fringe = near_opaque & (alpha > 0) & (alpha < 255)
    out = rgba.copy()
    out[:, :, :3][fringe] = borrowed[fringe]
    return out


def refine_edges(img: Image.Image, feather_amount: int = 2, defringe_radius: int = 2) -> Image.Image:
    """Feather the soft edge of a cut-out and strip colour fringing."""
    data = np.array(img.convert("RGBA"), dtype=np.uint8)
    alpha = data[:, :, 3]

    edge = (alpha > 0) & (alpha < 255)
    if feather_amount > 0 and edge.any():
        k = feather_amount * 2 + 1
        blurred = cv2.GaussianBlur(np.ascontiguousarray(alpha), (k, k), 0)
        alpha[edge] = blurred[edge]

    data = _defringe(data, radius=defringe_radius)
    return Image.fromarray(data)
