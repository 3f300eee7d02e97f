from flask import Flask, request, send_file, jsonify, render_template
from flask_cors import CORS
from werkzeug.exceptions import RequestEntityTooLarge
from PIL import UnidentifiedImageError
import base64
import json
import os
import platform
import sys
import time
from io import BytesIO

import requests

import ark
import config
import imaging
import removebg


app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_FILE_SIZE
CORS(app, resources={r"/api/*": {"origins": config.CORS_ORIGINS}}, expose_headers=[
    "X-Step-Log", "X-Step-Log-Json", "X-Method-Used", "X-Fallback-Used",
    "X-Already-Transparent", "X-Quality", "X-Original-Bytes", "X-Compressed-Bytes", "X-Output-Size",
])

FEATURES = [
    {"id": "compress", "title": "Image compression",
     "description": "Shrink file size while keeping visual quality", "color": "blue"},
    {"id": "remove-bg", "title": "Background removal",
     "description": "Detect the subject and cut away the background in one click", "color": "purple"},
    {"id": "recognize", "title": "Image recognition",
     "description": "Identify objects, text and scenes in a picture", "color": "green"},
    {"id": "generate", "title": "AI image generation",
     "description": "Create high quality images from a text description", "color": "orange"},
]


# -----------------------------
# STEP LOG
# -----------------------------
class StepLog:
    """Ordered per-request log of processing steps, echoed back in response headers."""

    def __init__(self):
        self.start_time = time.time()
        self.entries = []

    def t_ms(self):
        return int((time.time() - self.start_time) * 1000)

    def __call__(self, step, success=True, **data):
        entry = {"step": step, "success": bool(success), "t_ms": self.t_ms()}
        entry.update(data)
        self.entries.append(entry)

    def attach(self, resp):
        summary = [f"{e['step']}:{'ok' if e['success'] else 'fail'}@{e['t_ms']}ms" for e in self.entries]
        resp.headers["X-Step-Log"] = " | ".join(summary)

        b = json.dumps(self.entries, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        resp.headers["X-Step-Log-Json"] = base64.b64encode(b).decode("ascii")
        return resp

    def json(self, payload, status=200):
        resp = jsonify(payload)
        resp.status_code = status
        return self.attach(resp)

    def json_error(self, payload, status=400):
        payload["processing_log"] = self.entries
        return self.json(payload, status)


# -----------------------------
# AUTH / VALIDATION
# -----------------------------
def verify_api_key():
    """Verify API key if set in environment"""
    if config.API_KEY:
        provided_key = request.headers.get("X-API-Key") or request.form.get("api_key")
        if provided_key != config.API_KEY:
            return jsonify({"error": "Unauthorized", "message": "Invalid or missing API key"}), 401
    return None


def _guard(steps):
    auth_error = verify_api_key()
    if auth_error:
        resp, status = auth_error
        resp.status_code = status
        steps("auth_check", success=False, reason="invalid_or_missing_api_key")
        return steps.attach(resp)
    steps("auth_check", success=True)
    return None


def _read_image_upload(steps):
    """
    Read the single multipart field "image".
    Returns: (file, bytes, None) or (None, None, error_response)
    """
    if not request.files:
        steps("validate_input", success=False, reason="no_files")
        return None, None, steps.json_error({"error": "No files provided"}, status=400)

    got = set(request.files.keys())
    if got != {"image"}:
        steps("validate_input", success=False, reason="invalid_file_fields")
        return None, None, steps.json_error({
            "error": "Invalid file fields",
            "expected": ["image"],
            "received": sorted(got),
        }, status=400)

    file = request.files["image"]
    img_bytes = file.read() or b""
    if not img_bytes:
        steps("read_image", success=False, reason="empty_file")
        return None, None, steps.json_error({"error": "Empty image file"}, status=400)

    steps("read_image", success=True, bytes=len(img_bytes), filename=file.filename or "")
    return file, img_bytes, None


def _missing_key_error(steps, name):
    app.logger.error("%s is not set", name)
    steps("config_check", success=False, missing=name)
    return steps.json_error({"error": f"Server configuration error: {name} not set"}, status=500)


def _timestamp_ms():
    return int(time.time() * 1000)


@app.errorhandler(RequestEntityTooLarge)
def too_large(e):
    return jsonify({
        "error": "File too large",
        "max_bytes": config.MAX_FILE_SIZE,
    }), 413


# -----------------------------
# PAGES
# -----------------------------
@app.route("/", methods=["GET"])
def index():
    return render_template("index.html", features=FEATURES)


@app.route("/compress", methods=["GET"])
def compress_page():
    return render_template(
        "compress.html",
        default_quality=config.DEFAULT_QUALITY,
        min_quality=imaging.MIN_QUALITY,
        max_quality=imaging.MAX_QUALITY,
    )


@app.route("/remove-bg", methods=["GET"])
def remove_bg_page():
    return render_template("remove_bg.html")


@app.route("/recognize", methods=["GET"])
def recognize_page():
    return render_template("recognize.html")


@app.route("/generate", methods=["GET"])
def generate_page():
    return render_template("generate.html")


# -----------------------------
# HEALTH
# -----------------------------
@app.route("/health", methods=["GET"])
def health():
    auth_error = verify_api_key()
    if auth_error:
        return auth_error

    return jsonify({
        "status": "healthy",
        "python": sys.version.split(" ")[0],
        "platform": platform.platform(),
        "auth": "required" if bool(config.API_KEY) else "not_required",
        "ark_configured": bool(config.ARK_API_KEY),
        "removebg_configured": bool(config.REMOVE_BG_API_KEY),
        "bg_remove_provider": config.BG_REMOVE_PROVIDER,
        "rembg_model": config.REMBG_MODEL,
        "max_file_size": config.MAX_FILE_SIZE,
    })


# -----------------------------
# /api/compress
# -----------------------------
@app.route("/api/compress", methods=["POST"])
def compress_endpoint():
    """
    multipart/form-data with field "image"

    Optional fields:
      - quality: 10..100 percent (default=DEFAULT_QUALITY)
    """
    steps = StepLog()
    denied = _guard(steps)
    if denied:
        return denied

    _, img_bytes, error = _read_image_upload(steps)
    if error:
        return error

    try:
        quality = imaging.parse_quality(request.form.get("quality"), config.DEFAULT_QUALITY)
    except ValueError as e:
        steps("read_params", success=False, reason=str(e))
        return steps.json_error({"error": "Invalid quality", "message": str(e)}, status=400)
    steps("read_params", success=True, quality=quality)

    try:
        jpeg, meta = imaging.compress_image(img_bytes, quality)
    except UnidentifiedImageError:
        steps("decode_image", success=False, reason="unidentified_image")
        return steps.json_error({"error": "Unsupported image format"}, status=400)
    except Exception as e:
        app.logger.exception("compression failed")
        steps("exception", success=False, error=str(e))
        return steps.json_error({"error": "Processing failed", "details": str(e)}, status=500)

    steps("encode", success=True, **meta)

    resp = send_file(
        BytesIO(jpeg),
        mimetype="image/jpeg",
        as_attachment=True,
        download_name=f"compressed_image_{_timestamp_ms()}.jpg",
    )
    resp.headers["X-Quality"] = str(quality)
    resp.headers["X-Original-Bytes"] = str(meta["original_bytes"])
    resp.headers["X-Compressed-Bytes"] = str(meta["compressed_bytes"])
    resp.headers["X-Output-Size"] = f"{meta['width']}x{meta['height']}"
    return steps.attach(resp)


# -----------------------------
# /api/remove-bg
# -----------------------------
@app.route("/api/remove-bg", methods=["POST"])
def remove_bg_endpoint():
    """
    multipart/form-data with field "image"

    Optional fields:
      - provider: auto/removebg/rembg (default=BG_REMOVE_PROVIDER)
      - size: remove.bg output size (default=auto)
      - trim: true/false (default=false)
      - refine: true/false (default=false)
      - output_format: png/webp (default=png)
    """
    steps = StepLog()
    denied = _guard(steps)
    if denied:
        return denied

    file, img_bytes, error = _read_image_upload(steps)
    if error:
        return error

    provider = request.form.get("provider", config.BG_REMOVE_PROVIDER).strip().lower()
    size = request.form.get("size", "auto").strip().lower()
    do_trim = request.form.get("trim", "false").lower() == "true"
    do_refine = request.form.get("refine", "false").lower() == "true"
    output_format = request.form.get("output_format", "png").strip().lower()

    if provider not in removebg.PROVIDERS:
        steps("read_params", success=False, reason="invalid_provider", received=provider)
        return steps.json_error({"error": "Invalid provider", "allowed": sorted(removebg.PROVIDERS)}, status=400)
    if size not in removebg.REMOVE_BG_SIZES:
        steps("read_params", success=False, reason="invalid_size", received=size)
        return steps.json_error({"error": "Invalid size", "allowed": sorted(removebg.REMOVE_BG_SIZES)}, status=400)
    if output_format not in ("png", "webp"):
        steps("read_params", success=False, reason="invalid_output_format", received=output_format)
        return steps.json_error({"error": "Invalid output_format", "allowed": ["png", "webp"]}, status=400)

    steps("read_params", success=True, provider=provider, size=size, trim=do_trim,
          refine=do_refine, output_format=output_format)

    try:
        try:
            img = imaging.open_image_bytes(img_bytes)
            img.load()
        except UnidentifiedImageError:
            steps("decode_image", success=False, reason="unidentified_image")
            return steps.json_error({"error": "Unsupported image format"}, status=400)
        steps("decode_image", success=True, mode=img.mode, size=f"{img.width}x{img.height}")

        already_transparent = imaging.has_transparency(img_bytes)
        steps("check_transparency", success=True, already_transparent=already_transparent)

        try:
            result_img, method_used, fallback_used = removebg.remove_background(
                img, img_bytes, filename=file.filename or "", size=size, provider=provider, log=steps,
            )
        except removebg.RemoveBgError as e:
            app.logger.warning("background removal failed: %s", e.message)
            return steps.json_error({
                "error": "Background removal failed",
                "details": e.message,
                "upstream_status": e.status,
            }, status=502)
        except requests.RequestException as e:
            app.logger.warning("background removal request failed: %s", e)
            return steps.json_error({"error": "Background removal failed", "details": str(e)}, status=502)

        if fallback_used:
            app.logger.warning("remove.bg unavailable, used local rembg")

        if do_refine:
            result_img = imaging.refine_edges(result_img, feather_amount=2, defringe_radius=2)
            steps("refine_edges", success=True)

        if do_trim:
            result_img = imaging.trim_transparent(result_img, padding=2)
            steps("trim", success=True, out_size=f"{result_img.width}x{result_img.height}")

        out = BytesIO()
        if output_format == "webp":
            result_img.save(out, format="WEBP", lossless=True, quality=100, method=6)
            mimetype = "image/webp"
        else:
            result_img.save(out, format="PNG", optimize=True)
            mimetype = "image/png"
        out.seek(0)
        steps("encode", success=True, format=output_format, out_bytes=out.getbuffer().nbytes)

        resp = send_file(
            out,
            mimetype=mimetype,
            as_attachment=False,
            download_name=f"no-bg-image-{_timestamp_ms()}.{output_format}",
        )
        resp.headers["X-Method-Used"] = method_used
        resp.headers["X-Fallback-Used"] = str(bool(fallback_used))
        resp.headers["X-Already-Transparent"] = str(bool(already_transparent))
        resp.headers["X-Output-Size"] = f"{result_img.width}x{result_img.height}"
        return steps.attach(resp)

    except Exception as e:
        app.logger.exception("background removal crashed")
        steps("exception", success=False, error=str(e))
        return steps.json_error({"error": "Processing failed", "details": str(e)}, status=500)


# -----------------------------
# /api/recognize-image
# -----------------------------
def _recognition_input():
    """Accept JSON {imageData, imageFormat} or a multipart "image" upload."""
    if "image" in request.files:
        file = request.files["image"]
        img_bytes = file.read() or b""
        ext = os.path.splitext(file.filename or "")[1].lstrip(".").lower()
        image_data = base64.b64encode(img_bytes).decode("ascii") if img_bytes else None
        return image_data, ext or "jpeg"

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    return body.get("imageData"), body.get("imageFormat")


@app.route("/api/recognize-image", methods=["POST"])
def recognize_endpoint():
    steps = StepLog()
    denied = _guard(steps)
    if denied:
        return denied

    image_data, image_format = _recognition_input()
    if not image_data or not isinstance(image_data, str):
        steps("validate_input", success=False, reason="missing_image_data")
        return steps.json_error({"error": "Missing valid image data"}, status=400)
    if not image_format or not isinstance(image_format, str):
        steps("validate_input", success=False, reason="missing_image_format")
        return steps.json_error({"error": "Missing valid image format"}, status=400)
    steps("validate_input", success=True, image_format=image_format, chars=len(image_data))

    if not config.ARK_API_KEY:
        return _missing_key_error(steps, "ARK_API_KEY")

    try:
        result = ark.recognize_image(image_data, image_format, log=steps)
    except ark.ArkError as e:
        app.logger.warning("recognition failed upstream: %s", e.message)
        return steps.json_error(e.to_dict(), status=e.status)
    except Exception as e:
        app.logger.exception("recognition crashed")
        steps("exception", success=False, error=str(e))
        return steps.json_error({"error": "Error while processing the request", "details": str(e)}, status=500)

    if result.get("isSimulated"):
        app.logger.warning("recognition served simulated result (%s)", result.get("apiStatus"))
    return steps.json(result)


# -----------------------------
# /api/generate-image
# -----------------------------
@app.route("/api/generate-image", methods=["POST"])
def generate_endpoint():
    steps = StepLog()
    denied = _guard(steps)
    if denied:
        return denied

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    prompt = body.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        steps("validate_input", success=False, reason="missing_prompt")
        return steps.json_error({"error": "Please enter a valid prompt"}, status=400)
    steps("validate_input", success=True, prompt_chars=len(prompt))

    if not config.ARK_API_KEY:
        return _missing_key_error(steps, "ARK_API_KEY")

    try:
        result = ark.generate_image(prompt, log=steps)
    except ark.ArkError as e:
        app.logger.warning("generation failed upstream: %s", e.message)
        return steps.json_error(e.to_dict(), status=e.status)
    except Exception as e:
        app.logger.exception("generation crashed")
        steps("exception", success=False, error=str(e))
        return steps.json_error({"error": "Error while processing the request", "details": str(e)}, status=500)

    if result.get("isSimulated"):
        app.logger.warning("generation served placeholder image (%s)", result.get("apiStatus"))
    return steps.json(result)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=config.PORT, debug=config.DEBUG)
