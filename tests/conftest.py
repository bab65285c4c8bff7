import io
import sys
import json
import pathlib

import pytest

# Make project root importable
sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import chat_cli  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, body="", reason="OK"):
        self.status_code = status_code
        self.reason = reason
        if not isinstance(body, str):
            body = json.dumps(body)
        self.text = body
        self.content = body.encode("utf-8")
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True


class FakePost:
    """Stands in for requests.post; records every call and replays one outcome."""

    def __init__(self, response=None, exc=None):
        self.response = response if response is not None else FakeResponse()
        self.exc = exc
        self.calls = []

    def __call__(self, url, headers=None, data=None, **kwargs):
        self.calls.append({"url": url, "headers": headers, "data": data, "kwargs": kwargs})
        if self.exc is not None:
            raise self.exc
        return self.response

    @property
    def payload(self):
        return json.loads(self.calls[-1]["data"])


class TTYInput(io.StringIO):
    def isatty(self):
        return True


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("VLLM_API_URL", "VLLM_MODEL", "VLLM_API_TOKEN", "VLLM_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_post(monkeypatch):
    fake = FakePost(FakeResponse(200, {"choices": [{"message": {"content": "hi"}}]}))
    monkeypatch.setattr(chat_cli.requests, "post", fake)
    return fake


@pytest.fixture
def tty_stdin(monkeypatch):
    monkeypatch.setattr(sys, "stdin", TTYInput(""))


@pytest.fixture
def piped_stdin(monkeypatch):
    def _pipe(text):
        monkeypatch.setattr(sys, "stdin", io.StringIO(text))
    return _pipe
