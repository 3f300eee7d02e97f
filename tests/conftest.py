from io import BytesIO

import numpy as np
import pytest
from PIL import Image

import app as app_module
import config


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, content=b"", reason="OK"):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.reason = reason

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json


def image_bytes(mode="RGB", size=(64, 48), color=(200, 30, 30), fmt="PNG"):
    out = BytesIO()
    Image.new(mode, size, color).save(out, format=fmt)
    return out.getvalue()


def noisy_image_bytes(size=(96, 96), fmt="PNG"):
    rng = np.random.default_rng(1234)
    data = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    out = BytesIO()
    Image.fromarray(data).save(out, format=fmt)
    return out.getvalue()


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    monkeypatch.setattr(config, "API_KEY", None)
    monkeypatch.setattr(config, "ARK_API_KEY", "ark-test-key")
    monkeypatch.setattr(config, "ARK_BASE_URL", "https://ark.test/api/v3")
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", None)
    monkeypatch.setattr(config, "BG_REMOVE_PROVIDER", "auto")
    monkeypatch.setattr(config, "DEFAULT_QUALITY", 80)


@pytest.fixture
def client():
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


@pytest.fixture
def capture_post(monkeypatch):
    """Replace requests.post; responses are queued on the returned object."""

    class Recorder:
        def __init__(self):
            self.calls = []
            self.responses = []

        def __call__(self, url, **kwargs):
            self.calls.append((url, kwargs))
            result = self.responses.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

    recorder = Recorder()
    import requests
    monkeypatch.setattr(requests, "post", recorder)
    return recorder
