from io import BytesIO

import pytest
import requests
from PIL import Image

import config
import removebg
from conftest import FakeResponse, image_bytes


@pytest.fixture
def local_calls(monkeypatch):
    calls = []

    def fake_local(img):
        calls.append(img.size)
        return Image.new("RGBA", img.size, (1, 2, 3, 0))

    monkeypatch.setattr(removebg, "remove_background_local", fake_local)
    return calls


def _input():
    data = image_bytes(size=(32, 24))
    return Image.open(BytesIO(data)), data


def test_auto_without_key_uses_local_model(local_calls, capture_post):
    img, data = _input()

    out, method, fallback = removebg.remove_background(img, data)
    assert (method, fallback) == ("rembg", False)
    assert out.mode == "RGBA"
    assert local_calls == [(32, 24)]
    assert capture_post.calls == []


def test_remote_call_shape(monkeypatch, local_calls, capture_post):
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", "rb-key")
    capture_post.responses.append(FakeResponse(200, content=image_bytes(mode="RGBA", color=(9, 9, 9, 0))))
    img, data = _input()

    out, method, fallback = removebg.remove_background(img, data, filename="cat.png", size="preview")
    assert (method, fallback) == ("removebg", False)
    assert local_calls == []

    url, kwargs = capture_post.calls[0]
    assert url == config.REMOVE_BG_URL
    assert kwargs["headers"] == {"X-Api-Key": "rb-key"}
    assert kwargs["files"]["image_file"] == ("cat.png", data)
    assert kwargs["data"] == {"size": "preview"}


@pytest.mark.parametrize("failure", [
    FakeResponse(402, {"errors": [{"title": "Insufficient credits"}]}, reason="Payment Required"),
    requests.ConnectionError("down"),
])
def test_auto_falls_back_to_local_on_remote_failure(monkeypatch, local_calls, capture_post, failure):
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", "rb-key")
    capture_post.responses.append(failure)
    img, data = _input()

    _, method, fallback = removebg.remove_background(img, data)
    assert (method, fallback) == ("rembg_fallback", True)
    assert len(local_calls) == 1


def test_removebg_provider_propagates_errors(monkeypatch, local_calls, capture_post):
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", "rb-key")
    capture_post.responses.append(FakeResponse(402, {"errors": [{"title": "Insufficient credits"}]}))
    img, data = _input()

    with pytest.raises(removebg.RemoveBgError) as info:
        removebg.remove_background(img, data, provider="removebg")
    assert info.value.status == 402
    assert "Insufficient credits" in info.value.message
    assert local_calls == []


def test_removebg_provider_without_key_fails(local_calls, capture_post):
    img, data = _input()
    with pytest.raises(removebg.RemoveBgError):
        removebg.remove_background(img, data, provider="removebg")
    assert capture_post.calls == []


def test_rembg_provider_skips_remote_even_with_key(monkeypatch, local_calls, capture_post):
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", "rb-key")
    img, data = _input()

    _, method, _ = removebg.remove_background(img, data, provider="rembg")
    assert method == "rembg"
    assert capture_post.calls == []


def test_unknown_provider_rejected(local_calls):
    img, data = _input()
    with pytest.raises(ValueError):
        removebg.remove_background(img, data, provider="magic")


def test_local_session_is_created_once(monkeypatch):
    created = []
    monkeypatch.setattr(removebg, "REMBG_SESSION", None)
    monkeypatch.setattr(removebg, "new_session", lambda name: created.append(name) or object())
    monkeypatch.setattr(removebg, "rembg_remove", lambda img, **kw: img)

    img, _ = _input()
    removebg.remove_background_local(img)
    removebg.remove_background_local(img)
    assert created == [config.REMBG_MODEL]


def test_auto_falls_back_when_remote_body_is_not_an_image(monkeypatch, local_calls, capture_post):
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", "rb-key")
    capture_post.responses.append(FakeResponse(200, content=b"<html>oops</html>"))
    img, data = _input()

    out, method, fallback = removebg.remove_background(img, data)
    assert (method, fallback) == ("rembg_fallback", True)
    assert out.mode == "RGBA"
    assert len(local_calls) == 1


def test_removebg_provider_reports_unreadable_body(monkeypatch, local_calls, capture_post):
    monkeypatch.setattr(config, "REMOVE_BG_API_KEY", "rb-key")
    capture_post.responses.append(FakeResponse(200, content=b"<html>oops</html>"))
    img, data = _input()

    with pytest.raises(removebg.RemoveBgError) as info:
        removebg.remove_background(img, data, provider="removebg")
    assert "unreadable image" in info.value.message
    assert local_calls == []


@pytest.mark.parametrize("value, expected", [
    (None, "auto"), ("", "auto"), ("bogus", "auto"), (" REMBG ", "rembg"), ("removebg", "removebg"),
])
def test_provider_setting_falls_back_to_auto(value, expected):
    assert config.provider_or_default(value) == expected
