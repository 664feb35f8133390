"""
Deepgram Speech-to-Text streaming stage.

Twilio mu-law 8kHz is sent to Deepgram unchanged (encoding=mulaw). One
WebSocket per call; an uplink loop forwards audio frames and a downlink loop
parses transcript events. Only final transcripts leave this stage.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Protocol, Union
from urllib.parse import urlencode

import structlog
import websockets

from src.voicebot.channel import Channel, ShutdownSignal, receive, send
from src.voicebot.config import Config, get_config
from src.voicebot.errors import ConnectError, ProtocolError, StreamError
from src.voicebot.stage import FatalCallback, PipelineStage

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"
TWILIO_SAMPLE_RATE = 8000
CLOSE_TIMEOUT_S = 2.0


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    audio_bytes_sent: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0
    malformed_messages: int = 0

    @property
    def total_audio_ms(self) -> float:
        # mu-law 8kHz: one byte per sample
        return self.audio_bytes_sent / (TWILIO_SAMPLE_RATE / 1000)

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


class TranscriberConnection(Protocol):
    """The part of a websockets client connection this stage relies on."""

    async def send(self, message: Union[str, bytes]) -> None: ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...

    async def close(self) -> None: ...


def build_deepgram_url(config: Config) -> str:
    params = {
        "model": config.deepgram_model,
        "encoding": "mulaw",
        "sample_rate": TWILIO_SAMPLE_RATE,
        "channels": 1,
        "language": config.deepgram_language,
        "punctuate": "true",
        "smart_format": "true",
        "interim_results": "true",
        "vad_events": "true",
    }
    return f"{DEEPGRAM_URL}?{urlencode(params)}"


async def connect_deepgram(config: Optional[Config] = None) -> TranscriberConnection:
    """Open the streaming connection. Raises ConnectError on failure."""
    if config is None:
        config = get_config()

    headers = {"Authorization": f"Token {config.deepgram_api_key}"}
    try:
        ws = await websockets.connect(
            build_deepgram_url(config),
            additional_headers=headers,
            open_timeout=config.provider_timeout_seconds,
        )
    except Exception as e:
        logger.error(
            "Deepgram connection failed",
            error_type=type(e).__name__,
            error=str(e),
        )
        raise ConnectError("deepgram", str(e)) from e

    logger.info("Deepgram STT connected", model=config.deepgram_model)
    return ws


def _first_channel(value: Any) -> dict:
    # `channel` is normally an object; some payloads wrap it in a list.
    if isinstance(value, dict):
        return value
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


def parse_deepgram_message(raw: Union[str, bytes]) -> List[TranscriptionResult]:
    """
    Parse one Deepgram downlink message.

    The message may be a single JSON object or a list of objects. Non-result
    messages (Metadata, SpeechStarted, UtteranceEnd, ...) and empty
    transcripts yield nothing.

    Raises:
        ProtocolError: If the message is not valid JSON
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON from Deepgram: {e}")

    items = data if isinstance(data, list) else [data]
    results: List[TranscriptionResult] = []

    for item in items:
        if not isinstance(item, dict):
            raise ProtocolError("Deepgram message item is not an object")

        msg_type = item.get("type")
        if isinstance(msg_type, str) and msg_type and msg_type.lower() != "results":
            continue

        alternatives = _first_channel(item.get("channel")).get("alternatives") or []
        if not alternatives or not isinstance(alternatives[0], dict):
            continue

        transcript = (alternatives[0].get("transcript") or "").strip()
        if not transcript:
            continue

        confidence = alternatives[0].get("confidence") or 0.0
        results.append(
            TranscriptionResult(
                text=transcript,
                is_final=bool(item.get("is_final", False)),
                confidence=float(confidence),
            )
        )

    return results


class DeepgramSTT(PipelineStage):
    """
    STT stage: audio frames in, final transcripts out.

    Every final transcript is sent, in order, to each output channel.
    """

    name = "stt"

    def __init__(
        self,
        connection: TranscriberConnection,
        signal: ShutdownSignal,
        outputs: Optional[List[Channel[str]]] = None,
        on_fatal: Optional[FatalCallback] = None,
    ):
        super().__init__(signal, on_fatal)
        self._connection = connection
        self._outputs: List[Channel[str]] = list(outputs or [])
        self._metrics = STTMetrics()

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def add_output(self, channel: Channel[str]) -> None:
        self._outputs.append(channel)

    def start(self, audio_in: Channel[bytes]) -> None:
        self._spawn_loop(self._uplink(audio_in), name="uplink")
        self._spawn_loop(self._downlink(), name="downlink")
        logger.info("STT stage started", outputs=[c.name for c in self._outputs])

    async def _uplink(self, audio_in: Channel[bytes]) -> None:
        while True:
            audio = await receive(audio_in, self._signal)
            if not audio:
                continue
            try:
                await self._signal.guard(self._connection.send(audio))
            except websockets.exceptions.ConnectionClosed as e:
                raise StreamError(f"Deepgram connection closed while sending audio: {e}") from e
            self._metrics.audio_bytes_sent += len(audio)

    async def _downlink(self) -> None:
        try:
            async for message in self._connection:
                try:
                    results = parse_deepgram_message(message)
                except ProtocolError as e:
                    self._metrics.malformed_messages += 1
                    logger.warning("Skipping malformed Deepgram message", error=str(e))
                    continue

                for result in results:
                    await self._handle_result(result)
        except websockets.exceptions.ConnectionClosed as e:
            raise StreamError(f"Deepgram connection closed: {e}") from e

        raise StreamError("Deepgram stream ended")

    async def _handle_result(self, result: TranscriptionResult) -> None:
        self._metrics.record_transcript(result.is_final)

        if not result.is_final:
            logger.debug(
                "STT partial transcript",
                text=result.text[:50],
                confidence=round(result.confidence, 3),
            )
            return

        logger.info(
            "STT final transcript",
            text=result.text,
            confidence=round(result.confidence, 3),
        )
        for channel in self._outputs:
            await send(channel, result.text, self._signal)

    async def _close_resources(self) -> None:
        try:
            await self._connection.send(json.dumps({"type": "CloseStream"}))
        except Exception as e:
            logger.debug("Deepgram CloseStream not sent", error=str(e))

        try:
            await asyncio.wait_for(self._connection.close(), timeout=CLOSE_TIMEOUT_S)
        except Exception as e:
            logger.warning("Error closing Deepgram connection", error=str(e))

        logger.info(
            "Deepgram STT disconnected",
            audio_ms=round(self._metrics.total_audio_ms, 1),
            transcripts=self._metrics.total_transcripts,
            final_transcripts=self._metrics.final_transcripts,
        )
