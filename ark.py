"""
Client for the Volcengine Ark API (vision chat + image generation).

Both calls degrade to a canned, clearly flagged ("isSimulated") response when
the endpoint is closed or unreachable, so the pages still have something to
render. Any other upstream error is raised as ArkError.
"""
import requests

import config

DESCRIBE_PROMPT = "Describe the content of this image in detail."
RECOGNIZE_MAX_TOKENS = 1000

# error.code values that get a simulated response instead of an error
RECOGNIZE_SIMULATED_CODES = {"InvalidEndpoint.ClosedEndpoint"}
GENERATE_SIMULATED_CODES = {"AuthenticationError", "InvalidEndpoint.ClosedEndpoint"}

PLACEHOLDER_IMAGE_URL = (
    "https://images.unsplash.com/photo-1620712943543-bcc4688e7485?ixlib=rb-4.0.3"
    "&ixid=MnwxMjA3fDB8MHxzZWFyY2h8M3x8YWklMjBpbWFnZXxlbnwwfHwwfHw%3D&auto=format&fit=crop&w=800&q=60"
)
NETWORK_PLACEHOLDER_IMAGE_URL = (
    "https://images.unsplash.com/photo-1635070048854-f21724e3a405?ixlib=rb-4.0.3"
    "&ixid=MnwxMjA3fDB8MHxzZWFyY2h8N3x8YWklMjBpbWFnZXxlbnwwfHwwfHw%3D&auto=format&fit=crop&w=800&q=60"
)
PLACEHOLDER_ALT_TEXT = "Sample AI-generated image"

UNAVAILABLE_DESCRIPTION = (
    "[Simulated recognition result] The Volcengine API endpoint is temporarily unavailable, "
    "so this is a simulated recognition result.\n\n"
    "Normally the system analyses the image and returns a detailed description, usually covering:\n"
    "- the main objects and scene in the image\n"
    "- colour and texture\n"
    "- spatial relationships between objects\n"
    "- the likely mood or atmosphere\n\n"
    "Please try again later, or try a different image."
)
NETWORK_ERROR_DESCRIPTION = (
    "[Simulated recognition result] Because of a network problem or a temporarily unavailable API, "
    "this is a simulated recognition result.\n\n"
    "The system can usually recognise people, objects, scenes and text in an image. "
    "Quality depends on how clear the image is and how complex its content is.\n\n"
    "Suggestions:\n"
    "- make sure the image is clear\n"
    "- avoid overly complex or blurry scenes\n"
    "- try again later, the service may recover soon\n"
    "- try an image in a different format"
)


class ArkError(Exception):
    """Non-OK Ark response that has no simulated substitute."""

    def __init__(self, status, message, details=None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details

    def to_dict(self):
        return {"error": self.message, "status": self.status, "details": self.details}


def _post(path: str, payload: dict):
    """
    POST JSON to Ark.
    Returns: (http_status, ok, json_body). Network failures and non-JSON bodies
    raise requests.RequestException / ValueError.
    """
    resp = requests.post(
        f"{config.ARK_BASE_URL}{path}",
        headers={
            "Authorization": f"Bearer {config.ARK_API_KEY}",
            "Content-Type": "application/json",
        },
        json=payload,
        timeout=config.UPSTREAM_TIMEOUT,
    )
    return resp.status_code, resp.ok, resp.json()


def _error_of(body) -> dict:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


# -----------------------------
# RECOGNITION
# -----------------------------
def build_recognition_request(image_data: str, image_format: str) -> dict:
    return {
        "model": config.ARK_VISION_MODEL,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": DESCRIBE_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/{image_format.lower()};base64,{image_data}"},
                    },
                ],
            }
        ],
        "max_tokens": RECOGNIZE_MAX_TOKENS,
    }


def simulated_recognition(content: str, api_status: str) -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 100, "completion_tokens": 150, "total_tokens": 250},
        "isSimulated": True,
        "apiStatus": api_status,
    }


def recognize_image(image_data: str, image_format: str, log=None) -> dict:
    """Ask the vision model to describe a base64 image. Returns the upstream JSON as-is."""
    log = log or (lambda *a, **k: None)
    payload = build_recognition_request(image_data, image_format)

    try:
        status, ok, body = _post("/chat/completions", payload)
    except (requests.RequestException, ValueError) as e:
        log("ark_chat", success=False, error=str(e), simulated=True)
        return simulated_recognition(NETWORK_ERROR_DESCRIPTION, "network_error")

    log("ark_chat", success=ok, http_status=status)
    if ok:
        return body

    error = _error_of(body)
    if error.get("code") in RECOGNIZE_SIMULATED_CODES:
        return simulated_recognition(UNAVAILABLE_DESCRIPTION, "temporarily_unavailable")
    raise ArkError(status, error.get("message") or "Recognition API call failed", error or None)


# -----------------------------
# GENERATION
# -----------------------------
def build_generation_request(prompt: str) -> dict:
    return {
        "model": config.ARK_IMAGE_MODEL,
        "prompt": prompt,
        "sequential_image_generation": "disabled",
        "response_format": "url",
        "size": "2K",
        "stream": False,
        "watermark": True,
    }


def simulated_generation(url: str, api_status: str) -> dict:
    return {
        "data": {"url": url, "alt_text": PLACEHOLDER_ALT_TEXT},
        "isSimulated": True,
        "apiStatus": api_status,
    }


def _image_ref(item) -> str:
    if not isinstance(item, dict):
        return None
    if item.get("url"):
        return item["url"]
    b64 = item.get("b64_json")
    if b64 and not b64.startswith("data:"):
        return f"data:image/png;base64,{b64}"
    return b64


def normalize_generation_response(data) -> dict:
    """
    Reshape the upstream payload into {"data": {"url": ...}}.
    Accepted shapes, in order:
      - data.data is an object with a url (returned untouched)
      - data.data is a non-empty list
      - data.images is a non-empty list
      - a top-level url / image_url / result
    """
    if not isinstance(data, dict):
        return {"data": {"url": None}}

    inner = data.get("data")
    if isinstance(inner, dict) and inner.get("url"):
        return data
    if isinstance(inner, list) and inner:
        return {"data": {"url": _image_ref(inner[0])}}

    images = data.get("images")
    if isinstance(images, list) and images:
        return {"data": {"url": _image_ref(images[0])}}

    return {"data": {"url": data.get("url") or data.get("image_url") or data.get("result")}}


def generate_image(prompt: str, log=None) -> dict:
    log = log or (lambda *a, **k: None)
    payload = build_generation_request(prompt)

    try:
        status, ok, body = _post("/images/generations", payload)
    except (requests.RequestException, ValueError) as e:
        log("ark_generate", success=False, error=str(e), simulated=True)
        return simulated_generation(NETWORK_PLACEHOLDER_IMAGE_URL, "network_error")

    log("ark_generate", success=ok, http_status=status)
    if not ok:
        error = _error_of(body)
        code = error.get("code")
        if code in GENERATE_SIMULATED_CODES:
            return simulated_generation(PLACEHOLDER_IMAGE_URL, code)
        raise ArkError(status, error.get("message") or "Image generation failed", error or None)

    result = normalize_generation_response(body)
    log("normalize", success=bool(result["data"].get("url")))
    return result
