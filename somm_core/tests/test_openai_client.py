import json

import httpx
import pytest

from somm_core.domain.exceptions import (
    ApiError,
    AuthError,
    Cancelled,
    ModelUnavailableError,
    NetworkError,
    RateLimitError,
)
from somm_core.domain.models import ChatMessage, ChatRequest
from somm_core.domain.signals import AbortSignal
from somm_core.providers.openai_client import OpenAICompatClient


class SettingsStub:
    openai_api_key = "sk-test-0123456789"
    http_timeout = 1.0
    openai_base_url = "https://api.openai.com/v1"


def _req(model="somm-chat"):
    return ChatRequest(
        provider="openai",
        model=model,
        messages=[
            ChatMessage(role="system", content="sys"),
            ChatMessage(role="user", content="What goes with salmon?"),
        ],
        temperature=0.7,
        max_tokens=500,
        presence_penalty=0.1,
        frequency_penalty=0.1,
    )


class Resp:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data if data is not None else {}
        self.text = json.dumps(self._data)

    def json(self):
        return self._data


class StreamResp:
    def __init__(self, lines, status_code=200, body=None):
        self.status_code = status_code
        self._lines = lines
        self.text = json.dumps(body) if body is not None else ""
        self._body = body
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *a):
        return False

    def read(self):
        return self.text.encode("utf-8")

    def json(self):
        return self._body

    def close(self):
        self.closed = True

    def iter_lines(self):
        for line in self._lines:
            yield line


def _client_factory(captured, resp=None, stream_resp=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def close(self):
            pass

        def post(self, url, json=None, headers=None):
            captured["url"] = url
            captured["json"] = json
            captured["headers"] = headers
            return resp

        def stream(self, method, url, json=None, headers=None):
            captured["url"] = url
            captured["json"] = json
            return stream_resp

    return Client


def _sse(content=None, usage=None):
    data = {"choices": []}
    if content is not None:
        data["choices"] = [{"index": 0, "delta": {"content": content}, "finish_reason": None}]
    if usage is not None:
        data["usage"] = usage
    return "data: " + json.dumps(data)


def test_chat_parse_basic(monkeypatch):
    captured = {}
    resp = Resp(
        data={
            "choices": [{"message": {"role": "assistant", "content": "Try a Pinot Noir."}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17},
        }
    )
    monkeypatch.setattr("httpx.Client", _client_factory(captured, resp=resp))
    res = OpenAICompatClient(SettingsStub()).chat(_req())
    assert res.content == "Try a Pinot Noir."
    assert res.usage.total_tokens == 17
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["json"]["model"] == "gpt-4o"
    assert captured["json"]["presence_penalty"] == 0.1
    assert captured["json"]["messages"][0] == {"role": "system", "content": "sys"}
    assert "stream" not in captured["json"]
    assert captured["headers"]["Authorization"] == "Bearer sk-test-0123456789"


def test_chat_unknown_logical_name_passes_through(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _client_factory(captured, resp=Resp(data={"choices": []})))
    OpenAICompatClient(SettingsStub()).chat(_req(model="gpt-4.1-mini"))
    assert captured["json"]["model"] == "gpt-4.1-mini"


@pytest.mark.parametrize(
    "status,body,exc",
    [
        (401, {"error": {"message": "Incorrect API key"}}, AuthError),
        (429, {"error": {"message": "Rate limit reached"}}, RateLimitError),
        (404, {"error": {"message": "The model does not exist", "code": "model_not_found"}}, ModelUnavailableError),
        (400, {"error": {"message": "model_not_found"}}, ModelUnavailableError),
        (500, {"error": {"message": "server exploded"}}, ApiError),
    ],
)
def test_chat_status_mapping(monkeypatch, status, body, exc):
    monkeypatch.setattr("httpx.Client", _client_factory({}, resp=Resp(status_code=status, data=body)))
    with pytest.raises(exc) as info:
        OpenAICompatClient(SettingsStub()).chat(_req())
    assert info.value.http_status == status
    assert info.value.message == body["error"]["message"]


def test_chat_missing_key():
    class NoKey(SettingsStub):
        openai_api_key = None

    with pytest.raises(AuthError) as info:
        OpenAICompatClient(NoKey()).chat(_req())
    assert info.value.code == "MISSING_API_KEY"


def test_chat_network_error(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def close(self):
            pass

        def post(self, *a, **kw):
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("httpx.Client", Client)
    with pytest.raises(NetworkError):
        OpenAICompatClient(SettingsStub()).chat(_req())


def test_chat_stream_parses_sse(monkeypatch):
    captured = {}
    lines = [
        _sse("Grilled"),
        "",
        _sse(" meats"),
        ": keep-alive",
        _sse(usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}),
        "data: [DONE]",
    ]
    monkeypatch.setattr("httpx.Client", _client_factory(captured, stream_resp=StreamResp(lines)))
    chunks = list(OpenAICompatClient(SettingsStub()).chat_stream(_req()))
    assert [c.content for c in chunks] == ["Grilled", " meats", ""]
    assert chunks[-1].usage.total_tokens == 5
    assert captured["json"]["stream"] is True
    assert captured["json"]["stream_options"] == {"include_usage": True}


def test_chat_stream_error_status(monkeypatch):
    body = {"error": {"message": "The model `gpt-4o` does not exist"}}
    stream_resp = StreamResp([], status_code=404, body=body)
    monkeypatch.setattr("httpx.Client", _client_factory({}, stream_resp=stream_resp))
    with pytest.raises(ModelUnavailableError):
        list(OpenAICompatClient(SettingsStub()).chat_stream(_req()))


def test_chat_stream_abort_ends_quietly(monkeypatch):
    stream_resp = StreamResp([_sse("one"), _sse("two"), _sse("three")])
    monkeypatch.setattr("httpx.Client", _client_factory({}, stream_resp=stream_resp))
    abort = AbortSignal()
    seen = []
    for chunk in OpenAICompatClient(SettingsStub()).chat_stream(_req(), abort):
        seen.append(chunk.content)
        abort.abort()
    assert seen == ["one"]
    assert stream_resp.closed


def test_chat_non_json_body_is_bad_response(monkeypatch):
    class HtmlResp:
        status_code = 200
        text = "<html>gateway</html>"

        def json(self):
            return json.loads(self.text)

    monkeypatch.setattr("httpx.Client", _client_factory({}, resp=HtmlResp()))
    with pytest.raises(ApiError) as info:
        OpenAICompatClient(SettingsStub()).chat(_req())
    assert info.value.code == "BAD_RESPONSE"
    assert info.value.http_status == 502


def test_chat_stream_non_object_chunk_is_bad_response(monkeypatch):
    stream_resp = StreamResp([_sse("ok"), "data: [1, 2, 3]"])
    monkeypatch.setattr("httpx.Client", _client_factory({}, stream_resp=stream_resp))
    seen = []
    with pytest.raises(ApiError) as info:
        for chunk in OpenAICompatClient(SettingsStub()).chat_stream(_req()):
            seen.append(chunk.content)
    assert seen == ["ok"]
    assert info.value.code == "BAD_RESPONSE"


def test_chat_timeout(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def close(self):
            pass

        def post(self, *a, **kw):
            raise httpx.ReadTimeout("timed out")

        def stream(self, *a, **kw):
            raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr("httpx.Client", Client)
    with pytest.raises(NetworkError) as info:
        OpenAICompatClient(SettingsStub()).chat(_req())
    assert info.value.code == "TIMEOUT"
    assert info.value.http_status == 504
    with pytest.raises(NetworkError) as info:
        list(OpenAICompatClient(SettingsStub()).chat_stream(_req()))
    assert info.value.code == "TIMEOUT"


def test_chat_abort_closes_client(monkeypatch):
    abort = AbortSignal()
    clients = []

    class Client:
        def __init__(self, *a, **kw):
            self.closed = False
            clients.append(self)

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def close(self):
            self.closed = True

        def post(self, *a, **kw):
            # 请求进行中用户取消，连接被关闭后读取失败
            abort.abort()
            if self.closed:
                raise httpx.ReadError("connection closed")
            return Resp(data={"choices": []})

    monkeypatch.setattr("httpx.Client", Client)
    with pytest.raises(Cancelled):
        OpenAICompatClient(SettingsStub()).chat(_req(), abort)
    assert clients[0].closed
