import json
import time

import pytest
import requests

from chat_relay.config import RelayConfig
from chat_relay.llm_client import OllamaStreamClient
from chat_relay.service import ChatRelayService
from chat_relay.store import InMemoryConversationStore


def ndjson(*payloads):
    return b"".join(json.dumps(p, ensure_ascii=False).encode("utf-8") + b"\n" for p in payloads)


def delta(text):
    return {"message": {"role": "assistant", "content": text}, "done": False}


DONE = {"message": {"role": "assistant", "content": ""}, "done": True}


class FakeResponse:
    """Stand-in for a streaming ``requests.Response``.

    ``chunks`` items are raw byte chunks; an exception instance is raised when
    reached instead.
    """

    def __init__(self, chunks=(), status_code=200, text=""):
        self._chunks = list(chunks)
        self.status_code = status_code
        self.text = text
        self.closed = False
        self.reads = 0

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            if self.closed:
                raise requests.ConnectionError("connection closed")
            self.reads += 1
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True


class FakeJsonResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self):
        return self._payload


class FakeHttp:
    """Replays queued responses for ``post`` and records every request."""

    def __init__(self, *responses, tags=None):
        self.responses = list(responses)
        self.calls = []
        self.tags = tags

    def queue(self, *responses):
        self.responses.extend(responses)

    def post(self, url, json=None, stream=False, timeout=None):
        self.calls.append({"url": url, "json": json, "stream": stream, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, timeout=None):
        if self.tags is None:
            raise requests.ConnectionError("refused")
        return FakeJsonResponse(self.tags)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def service(http, store):
    config = RelayConfig()
    svc = ChatRelayService(config, store=store, client=OllamaStreamClient(config.upstream, http=http))
    yield svc
    svc.shutdown(wait=True)
