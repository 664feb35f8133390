"""
Pytest configuration and fixtures.
"""

import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch

import pytest
import websockets

from src.voicebot.errors import StreamError
from src.voicebot.llm import FILLER_SYSTEM_PROMPT
from src.voicebot.tts_providers.base import TTSProvider


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_FROM_NUMBER": "+15550001111",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "GREETING_TEXT": "Hello, how can I help you today?",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicebot.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeTelephony:
    """In-memory Twilio leg: feed inbound messages, capture outbound ones."""

    def __init__(self):
        self._inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.close_calls = 0
        self.fail_sends = False

    def feed(self, message: str) -> None:
        self._inbound.put_nowait(message)

    def hang_up(self) -> None:
        self._inbound.put_nowait(None)

    async def receive_text(self) -> str:
        message = await self._inbound.get()
        if message is None:
            raise StreamError("caller hung up")
        return message

    async def send_text(self, message: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("socket gone")
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1

    def sent_events(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.sent]


class FakeTranscriber:
    """Stands in for the Deepgram WebSocket."""

    def __init__(self):
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Any] = []
        self.closed = False
        # Sends block on this event when one is assigned.
        self.stall: Optional[asyncio.Event] = None

    def push(self, message: str) -> None:
        self._incoming.put_nowait(message)

    def push_transcript(self, text: str, is_final: bool = True) -> None:
        self.push(json.dumps({
            "type": "Results",
            "is_final": is_final,
            "channel": {"alternatives": [{"transcript": text, "confidence": 0.93}]},
        }))

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, message: Any) -> None:
        if self.closed:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        if self.stall is not None:
            await self.stall.wait()
        self.sent.append(message)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            message = await self._incoming.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)


class FakeChat:
    """
    Scripted streaming chat client.

    `replies` maps the last user message to its deltas; filler requests get
    `filler_reply`. `gate`, when set, must be released before each stream
    starts producing.
    """

    def __init__(self):
        self.replies: Dict[str, List[Any]] = {}
        self.default_reply: List[str] = ["Sure thing. ", "Anything else?"]
        self.filler_reply: List[str] = ["hmm"]
        self.requests: List[List[Dict[str, str]]] = []
        self.closed_streams = 0
        self.gate: Optional[asyncio.Event] = None

    async def stream(self, messages: List[Dict[str, str]]):
        self.requests.append(messages)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if messages[0]["content"] == FILLER_SYSTEM_PROMPT:
                deltas = self.filler_reply
            else:
                deltas = self.replies.get(messages[-1]["content"], self.default_reply)
            for delta in deltas:
                await asyncio.sleep(0)
                if isinstance(delta, BaseException):
                    raise delta
                yield delta
        finally:
            self.closed_streams += 1


class FakeSynthesizer(TTSProvider):
    """Synthesizes `text` into two chunks unless `chunks` says otherwise."""

    name = "fake"

    def __init__(self):
        self.chunks: Dict[str, List[Any]] = {}
        self.delays: Dict[str, float] = {}
        self.requests: List[str] = []
        self.closed = False

    async def synthesize_streaming(self, text: str):
        self.requests.append(text)
        delay = self.delays.get(text, 0.0)
        for chunk in self.chunks.get(text, [f"{text}|1".encode(), f"{text}|2".encode()]):
            await asyncio.sleep(delay)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def providers(transcriber, chat, synthesizer):
    """Session providers backed by the in-memory fakes."""
    from src.voicebot.session import Providers

    async def connect(config):
        return transcriber

    return Providers(
        connect_transcriber=connect,
        chat=lambda config: chat,
        synthesizer=lambda config: synthesizer,
    )


@pytest.fixture
def eventually():
    """Wait until `predicate()` holds, failing the test after `timeout`."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": "SD1",
        "start": {
            "streamSid": "SD1",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "SD1",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "SD1",
    })
