from __future__ import annotations

import base64
import binascii
import json
import time
from typing import Any, AsyncGenerator, List, Optional

import httpx
import structlog

from src.voicebot.config import Config, get_config
from src.voicebot.errors import ProtocolError, StreamError
from src.voicebot.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
AUDIO_KEYS = ("audio_base64", "audio", "chunk")


class JsonObjectStream:
    """
    Incremental parser for a stream of JSON objects.

    Objects may be concatenated or newline-delimited; a single object is never
    split across lines, so a failed parse with a newline already buffered means
    the data is malformed rather than incomplete.
    """

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._buffer = ""

    def feed(self, text: str) -> List[Any]:
        self._buffer += text
        objects: List[Any] = []
        while True:
            data = self._buffer.lstrip()
            if not data:
                self._buffer = ""
                break
            try:
                obj, end = self._decoder.raw_decode(data)
            except json.JSONDecodeError as e:
                # Hand back what parsed cleanly first; the next call raises.
                if "\n" in data and not objects:
                    raise ProtocolError(f"Malformed JSON in synthesis stream: {e}")
                self._buffer = data
                break
            objects.append(obj)
            self._buffer = data[end:]
        return objects

    def finish(self) -> None:
        if self._buffer.strip():
            raise ProtocolError("Synthesis stream ended inside a JSON object")


def decode_audio_object(obj: Any) -> Optional[bytes]:
    """Pull the audio out of one JSON stream object (None if it carries none)."""
    if not isinstance(obj, dict):
        raise ProtocolError("Synthesis stream item is not a JSON object")

    if obj.get("error") or obj.get("detail"):
        raise ProtocolError(f"Synthesis provider error: {obj.get('error') or obj.get('detail')}")

    for key in AUDIO_KEYS:
        audio_b64 = obj.get(key)
        if audio_b64:
            try:
                return base64.b64decode(audio_b64, validate=True)
            except (binascii.Error, TypeError, ValueError) as e:
                raise ProtocolError(f"Invalid base64 audio in synthesis stream: {e}")
    return None


def _is_json_response(response: httpx.Response) -> bool:
    content_type = (response.headers.get("content-type") or "").lower()
    return "json" in content_type or content_type.startswith("text/")


class ElevenLabsTTS(TTSProvider):
    """
    ElevenLabs streaming TTS over HTTP.

    Requests Twilio-native mu-law 8kHz (`ulaw_8000`) so no conversion is
    needed. Accepts either a raw audio byte stream or a stream of JSON
    objects carrying base64 audio (the `with-timestamps` endpoint).
    """

    name = "elevenlabs"

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(
            base_url=ELEVENLABS_BASE_URL,
            timeout=httpx.Timeout(self.config.provider_timeout_seconds),
        )

    def _request_path(self) -> str:
        path = f"/text-to-speech/{self.config.elevenlabs_voice_id}/stream"
        if self.config.elevenlabs_with_timestamps:
            path += "/with-timestamps"
        return path

    def _payload(self, text: str) -> dict:
        return {
            "text": text,
            "model_id": self.config.elevenlabs_model_id,
            "voice_settings": {
                "stability": 0.75,
                "similarity_boost": 0.7,
            },
        }

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[bytes, None]:
        if not text or not text.strip():
            return

        started = time.time()
        first_byte_ms: Optional[float] = None
        total_bytes = 0

        try:
            async with self._client.stream(
                "POST",
                self._request_path(),
                params={"output_format": self.config.elevenlabs_output_format},
                headers={"xi-api-key": self.config.elevenlabs_api_key},
                json=self._payload(text),
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread())[:200]
                    raise ProtocolError(
                        f"ElevenLabs returned status {response.status_code}: {body!r}"
                    )

                if _is_json_response(response):
                    parser = JsonObjectStream()
                    async for text_chunk in response.aiter_text():
                        for obj in parser.feed(text_chunk):
                            audio = decode_audio_object(obj)
                            if not audio:
                                continue
                            if first_byte_ms is None:
                                first_byte_ms = (time.time() - started) * 1000
                            total_bytes += len(audio)
                            yield audio
                    parser.finish()
                else:
                    async for audio in response.aiter_bytes():
                        if not audio:
                            continue
                        if first_byte_ms is None:
                            first_byte_ms = (time.time() - started) * 1000
                        total_bytes += len(audio)
                        yield audio

        except httpx.TransportError as e:
            raise StreamError(f"ElevenLabs connection failed: {type(e).__name__}: {e}") from e

        logger.debug(
            "ElevenLabs synthesis complete",
            characters=len(text),
            audio_ms=total_bytes / 8.0,
            first_byte_ms=round(first_byte_ms or 0.0, 2),
            total_ms=round((time.time() - started) * 1000, 2),
        )

    async def close(self) -> None:
        await self._client.aclose()
