"""Tests for the NDJSON streaming client."""

import pytest
import requests

from conftest import FakeResponse, FakeSession, ndjson

from cli_code.chat import (
    MAX_RETRIES_MESSAGE, CancelToken, ChatClient, StreamCallbacks,
    build_final, extract_response, iter_ndjson,
)
from cli_code.errors import ChatError, ChatErrorKind
from cli_code.models import ChatRequest, Message


class Recorder(StreamCallbacks):
    def __init__(self):
        self.events = []

    def on_thinking(self, thinking):
        self.events.append(("thinking", thinking))

    def on_content(self, content):
        self.events.append(("content", content))

    def on_tool_calls(self, tool_calls):
        self.events.append(("tool_calls", [c.name for c in tool_calls]))

    def on_final(self, content, metadata):
        self.events.append(("final", content, metadata))

    def on_done(self, snapshot):
        self.events.append(("done", snapshot))

    def kinds(self):
        return [e[0] for e in self.events]


def _request():
    return ChatRequest(messages=(Message("hi"),), provider="anthropic", model="claude-test")


def _client(config, *responses, refresher=None):
    session = FakeSession(*responses)
    return ChatClient(config, refresher=refresher, session=session), session


EXPIRED = {"error": {"message": "jwt expired", "details": {"name": "TokenExpiredError"}}}


class TestIterNdjson:
    def test_buffers_partial_lines(self):
        chunks = [b'{"type":"content","con', b'tent":"Hi"}\n{"type"', b':"done"}\n']
        assert list(iter_ndjson(chunks)) == [{"type": "content", "content": "Hi"}, {"type": "done"}]

    def test_trailing_line_without_newline(self):
        assert list(iter_ndjson([b'{"type":"done"}'])) == [{"type": "done"}]

    def test_split_multibyte_character(self):
        raw = '{"type":"content","content":"é"}\n'.encode("utf-8")
        cut = raw.index(b"\xa9")
        events = list(iter_ndjson([raw[:cut], raw[cut:]]))
        assert events[0]["content"] == "é"

    def test_blank_lines_skipped(self):
        assert list(iter_ndjson([b"\n\n", b'{"type":"done"}\n\n'])) == [{"type": "done"}]

    def test_malformed_line(self):
        with pytest.raises(ChatError) as exc:
            list(iter_ndjson([b"not json\n"]))
        assert exc.value.kind is ChatErrorKind.UNKNOWN


class TestExtractResponse:
    def test_plain_text(self):
        assert extract_response("Hello") == "Hello"

    def test_response_envelope(self):
        assert extract_response('{"response": "Hi there"}') == "Hi there"

    def test_text_envelope(self):
        assert extract_response('{"text": "Hi"}') == "Hi"

    def test_other_json_kept(self):
        assert extract_response('{"other": 1}') == '{"other": 1}'
        assert extract_response("42") == "42"


class TestBuildFinal:
    def test_full_message_blocks_win(self):
        event = {
            "type": "final",
            "fullMessage": {"content": [
                {"type": "thinking", "thinking": "plan", "signature": "sig-block"},
                {"type": "text", "text": "Body"},
                {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a"}},
            ]},
            "summary": {"thinking": "ignored", "thinkingSignature": "sig-summary"},
            "finishReason": "tool_use",
            "usageMetadata": {"inputTokens": 3, "outputTokens": 4},
        }
        content, meta = build_final(event, "accumulated")
        assert content == "Body"
        assert meta.thinking_content == "plan"
        assert meta.thinking_signature == "sig-block"
        assert [c.id for c in meta.tool_calls] == ["t1"]
        assert meta.finish_reason == "tool_use"
        assert meta.usage_metadata.total == 7

    def test_summary_signature_precedence(self):
        summary = {
            "toolCalls": [{"name": "list_files", "args": {}, "thoughtSignature": "from-call"}],
            "content": [{"thoughtSignature": "from-content"}],
        }
        _, meta = build_final({"summary": dict(summary, thinkingSignature="explicit")}, "")
        assert meta.thinking_signature == "explicit"
        _, meta = build_final({"summary": summary}, "")
        assert meta.thinking_signature == "from-call"
        _, meta = build_final({"summary": {"content": summary["content"]}}, "")
        assert meta.thinking_signature == "from-content"
        _, meta = build_final({"summary": {}}, "")
        assert meta.thinking_signature is None

    def test_summary_body_from_accumulator(self):
        content, meta = build_final({"summary": {"thinking": "t"}}, '{"response": "Hi"}')
        assert content == "Hi"
        assert meta.thinking_content == "t"
        assert meta.tool_calls == ()


class TestStreaming:
    def test_hello_stream(self, config):
        body = ndjson(
            {"type": "content", "content": "Hel"},
            {"type": "content", "content": "lo"},
            {"type": "final", "summary": {}},
            {"type": "done"},
        )
        client, session = _client(config, FakeResponse(200, body))
        rec = Recorder()

        client.send(_request(), rec)

        assert rec.events[0] == ("content", "Hel")
        assert rec.events[1] == ("content", "Hello")
        assert rec.events[2][:2] == ("final", "Hello")
        assert rec.kinds().count("done") == 1
        method, url, kwargs = session.calls[0]
        assert url == "http://worker.test/chat/stream"
        assert kwargs["headers"]["Authorization"] == "Bearer access-1"
        assert kwargs["json"]["chat"]["model"] == "claude-test"
        assert kwargs["stream"] is True

    def test_thinking_replaces(self, config):
        body = ndjson(
            {"type": "thinking", "content": "a"},
            {"type": "thinking", "content": "b"},
            {"type": "done"},
        )
        client, _ = _client(config, FakeResponse(200, body))
        rec = Recorder()
        client.send(_request(), rec)
        assert rec.events[:2] == [("thinking", "a"), ("thinking", "b")]

    def test_tool_calls_accumulate(self, config):
        body = ndjson(
            {"type": "tool_call", "toolCall": {"name": "read_file", "args": {"path": "a"}}},
            {"type": "tool_call", "toolCall": {"name": "list_files", "args": {"path": "."}}},
            {"type": "done"},
        )
        client, _ = _client(config, FakeResponse(200, body))
        rec = Recorder()
        client.send(_request(), rec)
        assert rec.events[0] == ("tool_calls", ["read_file"])
        assert rec.events[1] == ("tool_calls", ["read_file", "list_files"])
        assert [c.name for c in rec.events[2][1].tool_calls] == ["read_file", "list_files"]

    def test_unknown_event_ignored(self, config):
        body = ndjson({"type": "ping"}, {"type": "content", "content": "x"}, {"type": "done"})
        client, _ = _client(config, FakeResponse(200, body))
        rec = Recorder()
        client.send(_request(), rec)
        assert rec.kinds() == ["content", "done"]

    def test_duplicate_final_ignored(self, config):
        body = ndjson({"type": "final", "summary": {}}, {"type": "final", "summary": {}}, {"type": "done"})
        client, _ = _client(config, FakeResponse(200, body))
        rec = Recorder()
        client.send(_request(), rec)
        assert rec.kinds() == ["final", "done"]

    def test_missing_done_still_finishes(self, config):
        client, _ = _client(config, FakeResponse(200, ndjson({"type": "content", "content": "x"})))
        rec = Recorder()
        client.send(_request(), rec)
        assert rec.kinds() == ["content", "done"]
        assert rec.events[-1][1].content == "x"

    def test_error_event_aborts(self, config):
        body = ndjson({"type": "content", "content": "x"}, {"type": "error", "error": "model overloaded"},
                      {"type": "done"})
        client, _ = _client(config, FakeResponse(200, body))
        rec = Recorder()
        with pytest.raises(ChatError) as exc:
            client.send(_request(), rec)
        assert exc.value.kind is ChatErrorKind.UNKNOWN
        assert "model overloaded" in str(exc.value)
        assert "done" not in rec.kinds()

    def test_api_key_from_config(self, config):
        config.api_keys = {"anthropic": "sk-test"}
        client, session = _client(config, FakeResponse(200, ndjson({"type": "done"})))
        client.send(_request(), Recorder())
        assert session.calls[0][2]["json"]["chat"]["apiKey"] == "sk-test"


class TestCancellation:
    def test_cancel_stops_delivery(self, config):
        body = ndjson(
            {"type": "content", "content": "a"},
            {"type": "content", "content": "b"},
            {"type": "final", "summary": {}},
            {"type": "done"},
        )
        response = FakeResponse(200, body)
        client, _ = _client(config, response)
        token = CancelToken()

        class CancelOnFirst(Recorder):
            def on_content(self, content):
                super().on_content(content)
                token.cancel()

        rec = CancelOnFirst()
        client.send(_request(), rec, token)

        assert rec.kinds() == ["content"]
        assert response.closed

    def test_cancelled_before_send(self, config):
        client, session = _client(config)
        token = CancelToken()
        token.cancel()
        client.send(_request(), Recorder(), token)
        assert session.calls == []


class TestHttpErrors:
    @pytest.mark.parametrize("status,kind", [
        (429, ChatErrorKind.RATE_LIMIT),
        (403, ChatErrorKind.AUTH_ERROR),
        (500, ChatErrorKind.API_ERROR),
        (503, ChatErrorKind.API_ERROR),
        (404, ChatErrorKind.UNKNOWN),
    ])
    def test_classification(self, config, status, kind):
        client, _ = _client(config, FakeResponse(status, body={"error": "nope"}))
        with pytest.raises(ChatError) as exc:
            client.send(_request(), Recorder())
        assert exc.value.kind is kind
        assert exc.value.status == status

    def test_network_error(self, config):
        client, _ = _client(config, requests.ConnectionError("refused"))
        with pytest.raises(ChatError) as exc:
            client.send(_request(), Recorder())
        assert exc.value.kind is ChatErrorKind.NETWORK_ERROR

    def test_no_access_token(self, config):
        config.access_token = None
        client, session = _client(config)
        with pytest.raises(ChatError) as exc:
            client.send(_request(), Recorder())
        assert exc.value.kind is ChatErrorKind.AUTH_ERROR
        assert session.calls == []


class TestAuthRetry:
    def test_refresh_then_retry(self, config):
        calls = []

        def refresher(error_data):
            calls.append(error_data)
            config.access_token = "access-2"
            return "access-2"

        client, session = _client(
            config,
            FakeResponse(401, body=EXPIRED),
            FakeResponse(200, ndjson({"type": "content", "content": "ok"}, {"type": "done"})),
            refresher=refresher,
        )
        rec = Recorder()
        client.send(_request(), rec)

        assert calls == [EXPIRED]
        assert len(session.calls) == 2
        assert session.calls[1][2]["headers"]["Authorization"] == "Bearer access-2"
        assert rec.kinds() == ["content", "done"]

    def test_failed_refresh_surfaces_auth_error(self, config):
        client, session = _client(config, FakeResponse(401, body=EXPIRED), refresher=lambda e: None)
        with pytest.raises(ChatError) as exc:
            client.send(_request(), Recorder())
        assert exc.value.kind is ChatErrorKind.AUTH_ERROR
        assert len(session.calls) == 1

    def test_only_one_retry(self, config):
        refreshed = []

        def refresher(error_data):
            refreshed.append(1)
            return "access-2"

        client, session = _client(
            config,
            FakeResponse(401, body=EXPIRED),
            FakeResponse(401, body=EXPIRED),
            refresher=refresher,
        )
        with pytest.raises(ChatError) as exc:
            client.send(_request(), Recorder())
        assert str(exc.value) == MAX_RETRIES_MESSAGE
        assert exc.value.kind is ChatErrorKind.AUTH_ERROR
        assert len(session.calls) == 2
        assert len(refreshed) == 1

    def test_no_error_payload_skips_refresh(self, config):
        refreshed = []
        client, session = _client(
            config, FakeResponse(401, body=None), refresher=lambda e: refreshed.append(e) or "x"
        )
        with pytest.raises(ChatError) as exc:
            client.send(_request(), Recorder())
        assert exc.value.kind is ChatErrorKind.AUTH_ERROR
        assert refreshed == []


class TestCatalog:
    def test_get_models(self, config):
        client, session = _client(config, FakeResponse(200, body={"models": [{"provider": "openai", "model": "gpt"}]}))
        assert client.get_models() == [{"provider": "openai", "model": "gpt"}]
        assert session.calls[0][1] == "http://worker.test/models"

    def test_get_models_failure(self, config):
        client, _ = _client(config, requests.ConnectionError("down"))
        assert client.get_models() == []

    def test_get_user(self, config):
        client, session = _client(config, FakeResponse(200, body={"email": "a@b.c"}))
        assert client.get_user() == {"email": "a@b.c"}
        assert session.calls[0][2]["headers"]["Authorization"] == "Bearer access-1"
