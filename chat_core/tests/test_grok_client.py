import httpx
import pytest

from chat_core.providers.grok_client import GrokClient
from chat_core.domain.exceptions import RateLimitError, TransportError, UpstreamError, ValidationError


class SettingsStub:
    grok_api_key = "g" * 16
    http_timeout = 1.0
    stream_idle_timeout = 2.0
    grok_base_url = "https://api.x.ai/v1/"


class FakeResponse:
    def __init__(self, status_code=200, chunks=(), text="", data=None):
        self.status_code = status_code
        self._chunks = list(chunks)
        self.text = text
        self._data = data
        self.read_called = False

    def iter_bytes(self):
        for chunk in self._chunks:
            yield chunk

    def read(self):
        self.read_called = True
        return self.text.encode()

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def make_client(response=None, captured=None, error=None):
    class Client:
        def __init__(self, *a, **kw):
            if captured is not None:
                captured["timeout"] = kw.get("timeout")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if error is not None:
                raise error
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            return response

        def stream(self, method, url, json=None, headers=None, **_):
            if error is not None:
                raise error
            if captured is not None:
                captured.update(method=method, url=url, payload=json, headers=headers)
            return StreamContext(response)

    return Client


def test_grok_client_open_stream_yields_raw_bytes(monkeypatch):
    captured = {}
    resp = FakeResponse(chunks=[b"data: {}\n", b"data: [DONE]\n"])
    monkeypatch.setattr("httpx.Client", make_client(resp, captured))
    client = GrokClient(SettingsStub())
    with client.open_stream({"messages": []}) as chunks:
        assert list(chunks) == [b"data: {}\n", b"data: [DONE]\n"]
    assert captured["method"] == "POST"
    assert captured["url"] == "https://api.x.ai/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer " + "g" * 16
    assert captured["timeout"].read == 2.0


def test_grok_client_stream_upstream_error(monkeypatch):
    resp = FakeResponse(status_code=500, text="boom")
    monkeypatch.setattr("httpx.Client", make_client(resp))
    client = GrokClient(SettingsStub())
    with pytest.raises(UpstreamError) as exc:
        with client.open_stream({}):
            pass
    assert exc.value.http_status == 500
    assert "boom" in exc.value.message
    assert resp.read_called


def test_grok_client_stream_rate_limit(monkeypatch):
    monkeypatch.setattr("httpx.Client", make_client(FakeResponse(status_code=429)))
    with pytest.raises(RateLimitError):
        with GrokClient(SettingsStub()).open_stream({}):
            pass


def test_grok_client_connect_error_is_transport_error(monkeypatch):
    monkeypatch.setattr("httpx.Client", make_client(error=httpx.ConnectError("dns failure")))
    with pytest.raises(TransportError):
        with GrokClient(SettingsStub()).open_stream({}):
            pass
    with pytest.raises(TransportError):
        GrokClient(SettingsStub()).generate_image({})


def test_grok_client_generate_image(monkeypatch):
    captured = {}
    resp = FakeResponse(data={"data": [{"url": "https://img/1.png"}]})
    monkeypatch.setattr("httpx.Client", make_client(resp, captured))
    data = GrokClient(SettingsStub()).generate_image({"generateImage": True})
    assert data["data"][0]["url"] == "https://img/1.png"
    assert captured["payload"] == {"generateImage": True}


def test_grok_client_generate_image_bad_json(monkeypatch):
    monkeypatch.setattr("httpx.Client", make_client(FakeResponse(data=None)))
    with pytest.raises(UpstreamError) as exc:
        GrokClient(SettingsStub()).generate_image({})
    assert exc.value.code == "BAD_RESPONSE"


def test_grok_client_missing_api_key():
    class NoKey(SettingsStub):
        grok_api_key = None

    with pytest.raises(ValidationError):
        with GrokClient(NoKey()).open_stream({}):
            pass
