"""
Audio egress: synthesized frames and utterance marks back to Twilio.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

import structlog

from src.voicebot.channel import Channel, ShutdownSignal, receive
from src.voicebot.errors import ResourceError, StreamError
from src.voicebot.stage import FatalCallback, PipelineStage
from src.voicebot.tts_types import AudioFrame, OutboundAudio, UtteranceMark
from src.voicebot.twilio_protocol import (
    TelephonyConnection,
    create_mark_message,
    create_media_message,
)

logger = structlog.get_logger(__name__)


class TwilioEgress(PipelineStage):
    """Writes `media` and `mark` events for one stream; closes the leg on exit."""

    name = "egress"

    def __init__(
        self,
        connection: TelephonyConnection,
        stream_sid: str,
        signal: ShutdownSignal,
        on_fatal: Optional[FatalCallback] = None,
        close_connection: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        super().__init__(signal, on_fatal)
        self._connection = connection
        self.stream_sid = stream_sid
        self._close_connection = close_connection or connection.close
        self.frames_sent = 0
        self.marks_sent = 0
        self.bytes_sent = 0

    def start(self, frame_in: Channel[OutboundAudio]) -> None:
        self._spawn_loop(self._run(frame_in), name="writer")
        logger.info("Egress stage started", stream_sid=self.stream_sid)

    async def _run(self, frame_in: Channel[OutboundAudio]) -> None:
        try:
            while True:
                item = await receive(frame_in, self._signal)
                await self._write(item)
        finally:
            try:
                await self._close_connection()
            except Exception as e:
                logger.debug("Error closing telephony connection", error=str(e))
            logger.info(
                "Egress stage finished",
                frames=self.frames_sent,
                marks=self.marks_sent,
                audio_ms=self.bytes_sent / 8.0,
            )

    async def _write(self, item: OutboundAudio) -> None:
        if isinstance(item, AudioFrame):
            message = create_media_message(self.stream_sid, item.payload)
        elif isinstance(item, UtteranceMark):
            message = create_mark_message(self.stream_sid, item.name)
        else:
            logger.warning("Dropping unexpected egress item", item_type=type(item).__name__)
            return

        try:
            await self._signal.guard(self._connection.send_text(message))
        except ResourceError:
            raise
        except Exception as e:
            raise StreamError(f"Telephony write failed: {type(e).__name__}: {e}") from e

        if isinstance(item, AudioFrame):
            self.frames_sent += 1
            self.bytes_sent += len(item.payload)
        else:
            self.marks_sent += 1
            logger.debug("Utterance mark sent", mark=item.name)
