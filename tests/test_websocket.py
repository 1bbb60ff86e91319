"""
Tests for the WebSocket transport.
"""

import asyncio

from fastapi.testclient import TestClient

from toolchat_agent.agent import Agent, InMemorySessionStore
from toolchat_agent.api import create_app

from conftest import FakeLLM, text_stream, tool_call_stream


def _app(settings, llm=None, store=None):
    agent = Agent(llm=llm or FakeLLM(), settings=settings)
    return create_app(settings, agent=agent, store=store or InMemorySessionStore())


def _handshake(ws):
    connection = ws.receive_json()
    history = ws.receive_json()
    return connection, history


class TestHandshake:
    """Connection setup."""

    def test_connection_and_history_frames(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                connection, history = _handshake(ws)

        assert connection["type"] == "connection"
        assert connection["sessionId"] == "ws1"
        assert connection["content"] == "Connected to ChatBot WebSocket server"
        assert "timestamp" in connection
        assert history == {
            "type": "history",
            "sessionId": "ws1",
            "history": [],
            "timestamp": history["timestamp"],
        }

    def test_session_id_is_generated(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws") as ws:
                connection, history = _handshake(ws)

        assert connection["sessionId"]
        assert history["sessionId"] == connection["sessionId"]


class TestFrames:
    """Inbound frame handling."""

    def test_ping(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "ping"})
                frame = ws.receive_json()

        assert frame["type"] == "pong"

    def test_invalid_json(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_text("not json")
                frame = ws.receive_json()

        assert frame["type"] == "error"
        assert frame["error"] == "Invalid message format"

    def test_unknown_type(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "dance"})
                frame = ws.receive_json()

        assert frame["error"] == "Unknown message type: dance"

    def test_chat_requires_message(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "chat", "message": ""})
                frame = ws.receive_json()

        assert frame["error"] == "Message content is required"

    def test_reconnect_requires_session_id(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "reconnect"})
                frame = ws.receive_json()

        assert frame["error"] == "Session ID is required"

    def test_clear(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "clear"})
                frame = ws.receive_json()

        assert frame["type"] == "clear"
        assert frame["sessionId"] == "ws1"
        assert frame["content"] == "Chat history cleared"

    def test_binary_frame_is_decoded(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_bytes(b'{"type": "ping"}')
                frame = ws.receive_json()

        assert frame["type"] == "pong"

    def test_undecodable_binary_frame_keeps_connection(self, settings):
        with TestClient(_app(settings)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_bytes(b"\xff\xfe\x00")
                error = ws.receive_json()
                ws.send_json({"type": "ping"})
                pong = ws.receive_json()

        assert error["error"] == "Invalid message format"
        assert pong["type"] == "pong"

    def test_store_failure_keeps_connection(self, settings):
        class OfflineStore(InMemorySessionStore):
            async def clear_messages(self, session_id):
                raise RuntimeError("store offline")

        app = _app(settings, store=OfflineStore())
        with TestClient(app) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "clear"})
                error = ws.receive_json()
                ws.send_json({"type": "ping"})
                pong = ws.receive_json()

        assert error["type"] == "error"
        assert error["error"] == "store offline"
        assert pong["type"] == "pong"


class TestChat:
    """Streaming chat over the socket."""

    def test_plain_chat_streams_tokens(self, settings):
        llm = FakeLLM(streams=[text_stream("Hello", " there")])
        with TestClient(_app(settings, llm=llm)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "chat", "message": "Hi"})
                frames = [ws.receive_json() for _ in range(3)]

        assert frames[0]["type"] == "message"
        assert frames[0]["content"] == "Using session: ws1"
        assert [(f["type"], f["content"]) for f in frames[1:]] == [
            ("token", "Hello"),
            ("token", " there"),
        ]
        assert all(f["sessionId"] == "ws1" for f in frames)

    def test_tool_chat_frames(self, settings):
        llm = FakeLLM(streams=[
            tool_call_stream("call_1", "calculate", '{"expression": "2 + 2 * 3"}'),
            text_stream("It is 8."),
        ])
        with TestClient(_app(settings, llm=llm)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "chat", "message": "What is 2 + 2 * 3?"})
                frames = [ws.receive_json() for _ in range(6)]

        assert [f["type"] for f in frames] == [
            "message",
            "tool_call",
            "tool_progress",
            "tool_progress",
            "tool_result",
            "token",
        ]
        call, progress, _, result, _ = frames[1:]
        assert call["tool"] == "calculate"
        assert call["args"] == {"expression": "2 + 2 * 3"}
        assert progress["content"] == "Parsing expression..."
        assert result["result"] == "2 + 2 * 3 = 8"
        assert result["success"] is True
        assert len({call["id"], progress["id"], result["id"]}) == 3

    def test_time_tool_uses_handshake_timezone(self, settings):
        llm = FakeLLM(streams=[
            tool_call_stream("call_1", "get_current_time", "{}"),
            text_stream("Late."),
        ])
        with TestClient(_app(settings, llm=llm)) as client:
            with client.websocket_connect("/ws?sessionId=ws1&tz=Asia/Seoul&locale=ko-KR") as ws:
                _handshake(ws)
                ws.send_json({"type": "chat", "message": "What time is it?"})
                frames = [ws.receive_json() for _ in range(2)]

        assert frames[1]["type"] == "tool_call"
        assert frames[1]["args"] == {"timezone": "Asia/Seoul", "locale": "ko-KR"}

    def test_history_is_replayed_on_reconnect(self, settings):
        store = InMemorySessionStore()
        llm = FakeLLM(streams=[text_stream("Hello!")])

        with TestClient(_app(settings, llm=llm, store=store)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "chat", "message": "Hi"})
                [ws.receive_json() for _ in range(2)]

        # A fresh server over the same store resumes the conversation
        with TestClient(_app(settings, store=store)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _, history = _handshake(ws)

        assert [(m["role"], m["content"]) for m in history["history"]] == [
            ("user", "Hi"),
            ("assistant", "Hello!"),
        ]

    def test_turn_completes_after_disconnect(self, settings):
        store = InMemorySessionStore()
        llm = FakeLLM(streams=[text_stream("one", " two", " three")])

        with TestClient(_app(settings, llm=llm, store=store)) as client:
            with client.websocket_connect("/ws?sessionId=ws1") as ws:
                _handshake(ws)
                ws.send_json({"type": "chat", "message": "Count"})
                ws.receive_json()

        session = asyncio.run(store.get_session("ws1"))
        assert [m.content for m in session.messages] == ["Count", "one two three"]
