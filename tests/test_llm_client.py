import logging

import pytest
import requests

from chat_relay.cancellation import CancellationToken
from chat_relay.config import UpstreamConfig
from chat_relay.errors import StreamCancelled, UpstreamError, UpstreamStreamError
from chat_relay.llm_client import NDJSONFrameDecoder, OllamaStreamClient, UpstreamFrame

from conftest import DONE, FakeHttp, FakeResponse, delta, ndjson

SAMPLE = b'{"message":{"content":"Hi"},"done":false}\n{"done":true}\n'


def _decode_all(chunks):
    decoder = NDJSONFrameDecoder()
    frames = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    frames.extend(decoder.flush())
    return frames


def test_decoder_is_insensitive_to_chunk_boundaries():
    whole = _decode_all([SAMPLE])
    assert whole == [UpstreamFrame(content="Hi"), UpstreamFrame(done=True)]
    for offset in range(1, len(SAMPLE)):
        assert _decode_all([SAMPLE[:offset], SAMPLE[offset:]]) == whole


def test_decoder_buffers_partial_line_until_newline():
    decoder = NDJSONFrameDecoder()
    assert decoder.feed(b'{"message":{"content":"He') == []
    assert decoder.pending > 0
    assert decoder.feed(b'llo"},"done":false}\n') == [UpstreamFrame(content="Hello")]
    assert decoder.pending == 0


def test_decoder_handles_multibyte_characters_split_across_chunks():
    data = ndjson(delta("héllo ✓"))
    split = data.index("✓".encode("utf-8")) + 1
    assert _decode_all([data[:split], data[split:]]) == [UpstreamFrame(content="héllo ✓")]


def test_decoder_drops_noise_and_keeps_going(caplog):
    data = b'not json\n\n[1, 2]\n' + ndjson(delta("ok"))
    with caplog.at_level(logging.WARNING, logger="chat_relay.llm_client"):
        frames = _decode_all([data])
    assert frames == [UpstreamFrame(content="ok")]
    assert "unparsable" in caplog.text
    assert "non-object" in caplog.text


def test_decoder_raises_on_error_object():
    with pytest.raises(UpstreamStreamError):
        NDJSONFrameDecoder().feed(b'{"error":"model not found"}\n')


def test_decoder_flushes_unterminated_last_line():
    decoder = NDJSONFrameDecoder()
    assert decoder.feed(b'{"done":true}') == []
    assert decoder.flush() == [UpstreamFrame(done=True)]


def test_open_stream_sends_streaming_payload():
    response = FakeResponse([ndjson(delta("a"), DONE)])
    http = FakeHttp(response)
    config = UpstreamConfig(base_url="http://ollama:11434/")
    client = OllamaStreamClient(config, http=http)
    messages = [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]

    with client.open_stream(messages, model="deepseek-r1:7b", cancel_token=CancellationToken()) as stream:
        frames = list(stream)

    call = http.calls[0]
    assert call["url"] == "http://ollama:11434/api/chat"
    assert call["stream"] is True
    assert call["json"]["model"] == "deepseek-r1:7b"
    assert call["json"]["stream"] is True
    assert call["json"]["messages"] == messages
    assert call["json"]["options"] == {
        "temperature": 0.4,
        "top_p": 0.9,
        "repeat_penalty": 1.2,
        "presence_penalty": 0.6,
    }
    assert frames == [UpstreamFrame(content="a"), UpstreamFrame(content="", done=True)]
    assert response.closed


def test_non_success_status_fails_before_any_frame():
    response = FakeResponse(status_code=404, text='{"error":"model \\"nope\\" not found"}')
    client = OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response))
    with pytest.raises(UpstreamError) as excinfo:
        client.open_stream([], model="nope", cancel_token=CancellationToken())
    assert excinfo.value.upstream_status == 404
    assert "not found" in excinfo.value.body
    assert response.closed


def test_refused_connection_is_an_upstream_error():
    client = OllamaStreamClient(UpstreamConfig(), http=FakeHttp(requests.ConnectionError("refused")))
    with pytest.raises(UpstreamError) as excinfo:
        client.open_stream([], model="llama3.1:8b", cancel_token=CancellationToken())
    assert excinfo.value.upstream_status is None
    assert "refused" in excinfo.value.body


def test_already_cancelled_token_never_connects():
    http = FakeHttp()
    token = CancellationToken()
    token.cancel()
    with pytest.raises(StreamCancelled):
        OllamaStreamClient(UpstreamConfig(), http=http).open_stream([], model="m", cancel_token=token)
    assert http.calls == []


def test_stream_stops_reading_after_done():
    response = FakeResponse([ndjson(delta("a")), ndjson(DONE), ndjson(delta("late"))])
    client = OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response))
    frames = list(client.open_stream([], model="m", cancel_token=CancellationToken()))
    assert [f.content for f in frames if f.content] == ["a"]
    assert response.reads == 2


def test_body_ending_without_done_marker_completes():
    response = FakeResponse([ndjson(delta("a"), delta("b"))])
    stream = OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response)).open_stream(
        [], model="m", cancel_token=CancellationToken()
    )
    assert [f.content for f in stream] == ["a", "b"]
    assert stream.finished


def test_cancellation_ends_stream_and_closes_response():
    response = FakeResponse([ndjson(delta(str(i))) for i in range(5)] + [ndjson(DONE)])
    token = CancellationToken()
    stream = OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response)).open_stream(
        [], model="m", cancel_token=token
    )
    frames = iter(stream)
    assert next(frames).content == "0"
    assert next(frames).content == "1"
    token.cancel("client")
    assert response.closed
    with pytest.raises(StreamCancelled) as excinfo:
        next(frames)
    assert excinfo.value.reason == "client"


def test_cancellation_between_frames_of_one_chunk():
    response = FakeResponse([ndjson(delta("a"), delta("b"), DONE)])
    token = CancellationToken()
    frames = iter(
        OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response)).open_stream([], model="m", cancel_token=token)
    )
    assert next(frames).content == "a"
    token.cancel()
    with pytest.raises(StreamCancelled):
        next(frames)


def test_transport_failure_mid_stream():
    response = FakeResponse([ndjson(delta("a")), requests.exceptions.ChunkedEncodingError("reset")])
    frames = iter(
        OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response)).open_stream(
            [], model="m", cancel_token=CancellationToken()
        )
    )
    assert next(frames).content == "a"
    with pytest.raises(UpstreamStreamError):
        next(frames)
    assert response.closed


def test_max_duration_is_reported_as_timeout_cancellation():
    response = FakeResponse([ndjson(delta("a"), DONE)])
    token = CancellationToken()
    stream = OllamaStreamClient(UpstreamConfig(), http=FakeHttp(response)).open_stream(
        [], model="m", cancel_token=token, max_duration=1e-9
    )
    with pytest.raises(StreamCancelled) as excinfo:
        list(stream)
    assert excinfo.value.reason == "timeout"
    assert token.reason == "timeout"


def test_list_models():
    http = FakeHttp(tags={"models": [{"name": "llama3.1:8b"}, {"name": "deepseek-r1:7b"}]})
    assert OllamaStreamClient(UpstreamConfig(), http=http).list_models() == ["llama3.1:8b", "deepseek-r1:7b"]
