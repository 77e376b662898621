import httpx
import pytest

from chat_core.domain.exceptions import ApiError, AuthError, NetworkError, RateLimitError, RequestTimeoutError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.providers.http_client import ChatCompletionsClient


class SettingsStub:
    completion_api_key = "sk-test-0123456789"
    http_timeout = 1.0
    completion_base_url = "https://api.example.com/v1"


def _request(model="DeepSeek-V3"):
    return ChatRequest(model=model, messages=[ChatMessage(role="user", content="hi")])


class FakeResponse:
    def __init__(self, status_code=200, data=None, lines=(), body=b""):
        self.status_code = status_code
        self._data = data or {}
        self._lines = list(lines)
        self._body = body
        self.text = body.decode("utf-8")

    def json(self):
        return self._data

    async def aiter_lines(self):
        for line in self._lines:
            yield line

    async def aread(self):
        return self._body


class StreamContext:
    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self._response

    async def __aexit__(self, *args):
        return False


def make_client_cls(response=None, captured=None, error=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, **_):
            if error:
                raise error
            if captured is not None:
                captured["url"] = url
                captured["payload"] = json
            return response

        def stream(self, method, url, json=None, **_):
            if error:
                raise error
            if captured is not None:
                captured["payload"] = json
            return StreamContext(response)

    return Client


@pytest.mark.asyncio
async def test_chat_parses_response_and_maps_model(monkeypatch):
    captured = {}
    resp = FakeResponse(
        data={
            "choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        }
    )
    monkeypatch.setattr("httpx.AsyncClient", make_client_cls(resp, captured))
    res = await ChatCompletionsClient(SettingsStub()).chat(_request())

    assert res.text == "ok"
    assert res.usage.total_tokens == 2
    assert captured["url"] == "https://api.example.com/v1/chat/completions"
    assert captured["payload"]["model"] == "deepseek-chat"
    assert captured["payload"]["stream"] is False


@pytest.mark.asyncio
async def test_chat_stream_yields_deltas(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "Hi"}}]}',
        "",
        "data: not-json",
        'data: {"choices": [{"index": 0, "delta": {"content": " there"}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}}',
        "data: [DONE]",
    ]
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", make_client_cls(FakeResponse(lines=lines), captured))
    chunks = [c async for c in ChatCompletionsClient(SettingsStub()).chat_stream(_request())]

    assert [c.text for c in chunks] == ["Hi", " there"]
    assert chunks[1].usage.total_tokens == 3
    assert captured["payload"]["stream"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected",
    [(429, RateLimitError), (401, AuthError), (403, AuthError), (500, ApiError)],
)
async def test_chat_stream_maps_http_errors(monkeypatch, status, expected):
    resp = FakeResponse(status_code=status, body=b'{"error": "nope"}')
    monkeypatch.setattr("httpx.AsyncClient", make_client_cls(resp))
    with pytest.raises(expected) as exc:
        async for _ in ChatCompletionsClient(SettingsStub()).chat_stream(_request()):
            pass
    assert exc.value.http_status == status


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", make_client_cls(error=httpx.ConnectError("boom")))
    with pytest.raises(NetworkError):
        await ChatCompletionsClient(SettingsStub()).chat(_request())

    monkeypatch.setattr("httpx.AsyncClient", make_client_cls(error=httpx.ReadTimeout("slow")))
    with pytest.raises(RequestTimeoutError):
        async for _ in ChatCompletionsClient(SettingsStub()).chat_stream(_request()):
            pass


@pytest.mark.asyncio
async def test_missing_api_key_is_auth_error():
    class NoKey(SettingsStub):
        completion_api_key = None

    with pytest.raises(AuthError) as exc:
        await ChatCompletionsClient(NoKey()).chat(_request())
    assert exc.value.code == "MISSING_API_KEY"
