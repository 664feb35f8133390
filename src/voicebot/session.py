"""Call session orchestration.

One session per accepted Twilio media stream. It owns every channel and stage
of the call:

    Twilio media -> audio -> STT -> transcripts -> Agent/Filler -> replies
    -> Synthesis -> frames -> Egress -> Twilio

Lifecycle: CREATED -> WIRING -> ACTIVE -> DRAINING -> CLOSED. Any stage can
end the call by reporting a fatal error; teardown runs exactly once no
matter how many parties ask for it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.voicebot.channel import Channel, ShutdownSignal, send
from src.voicebot.config import Config, get_config
from src.voicebot.egress import TwilioEgress
from src.voicebot.errors import (
    ConnectError,
    ProtocolError,
    ResourceError,
    SessionClosing,
    StreamError,
    UnknownEventError,
)
from src.voicebot.llm import ChatClient, create_chat_client
from src.voicebot.responders import AgentStage, FillerStage, TurnGate
from src.voicebot.stage import PipelineStage
from src.voicebot.stt import DeepgramSTT, TranscriberConnection, connect_deepgram
from src.voicebot.tts import SynthesisStage, create_synthesizer
from src.voicebot.tts_providers.base import TTSProvider
from src.voicebot.tts_types import OutboundAudio, ReplyFragment
from src.voicebot.twilio_protocol import (
    TelephonyConnection,
    TwilioEventType,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    """Lifecycle of one call."""
    CREATED = "created"
    WIRING = "wiring"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class Providers:
    """Factories for the per-call provider clients."""
    connect_transcriber: Callable[[Config], Awaitable[TranscriberConnection]] = connect_deepgram
    chat: Callable[[Config], ChatClient] = create_chat_client
    synthesizer: Callable[[Config], TTSProvider] = create_synthesizer


@dataclass
class SessionMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    media_messages: int = 0
    audio_bytes_in: int = 0
    malformed_messages: int = 0
    unknown_events: int = 0
    marks_acked: int = 0
    close_reason: str = ""

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "media_messages": self.media_messages,
            "audio_ms_in": self.audio_bytes_in / 8.0,
            "malformed_messages": self.malformed_messages,
            "unknown_events": self.unknown_events,
            "marks_acked": self.marks_acked,
            "close_reason": self.close_reason,
        }


class CallSession:
    """Owns the stages and channels of one call and drives its lifecycle."""

    def __init__(
        self,
        connection: TelephonyConnection,
        config: Config,
        providers: Providers,
    ):
        self._connection = connection
        self.config = config
        self._providers = providers
        self._state = SessionState.CREATED
        self._signal = ShutdownSignal()
        self._log = logger
        self._metrics = SessionMetrics()

        # Inbound audio blocks the telephony reader when STT falls behind; no frame is lost.
        self._audio: Channel[bytes] = Channel("audio", maxsize=config.audio_channel_size)
        self._agent_in: Channel[str] = Channel("agent-transcripts")
        self._filler_in: Channel[str] = Channel("filler-transcripts")
        self._replies: Channel[ReplyFragment] = Channel("replies")
        self._frames: Channel[OutboundAudio] = Channel("frames", maxsize=config.frame_channel_size)
        self._channels: List[Channel[Any]] = [
            self._audio,
            self._agent_in,
            self._filler_in,
            self._replies,
            self._frames,
        ]

        self._stages: List[PipelineStage] = []
        self._agent: Optional[AgentStage] = None
        self._ingress_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._connection_closed = False

    @classmethod
    def create(
        cls,
        connection: TelephonyConnection,
        config: Optional[Config] = None,
        providers: Optional[Providers] = None,
    ) -> "CallSession":
        """
        Accept a telephony connection.

        Raises:
            MissingCredentialsError: If a provider key is not configured
        """
        config = config or get_config()
        config.require_provider_credentials()
        session = cls(connection, config, providers or Providers())
        logger.info("Call session created")
        return session

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stream_sid(self) -> str:
        return self._metrics.stream_sid

    @property
    def call_sid(self) -> str:
        return self._metrics.call_sid

    @property
    def signal(self) -> ShutdownSignal:
        return self._signal

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    @property
    def stages(self) -> List[PipelineStage]:
        return list(self._stages)

    def _set_state(self, state: SessionState) -> None:
        self._log.debug("Session state", old=self._state.value, new=state.value)
        self._state = state

    async def begin(self) -> None:
        """Wire the pipeline, then run until the call ends and is torn down."""
        self._set_state(SessionState.WIRING)
        try:
            await self._wire()
        except ConnectError as e:
            self._log.error("Call wiring failed", provider=e.provider, error=str(e))
            await self.shutdown(f"wiring failed: {e}")
            return
        except SessionClosing:
            await self.shutdown(self._signal.reason or "shutdown during wiring")
            return
        except Exception as e:
            self._log.exception("Unexpected error while wiring call")
            await self.shutdown(f"wiring failed: {type(e).__name__}")
            raise

        self._ingress_task = asyncio.create_task(self._ingress(), name="session:ingress")
        reason = await self._signal.wait()
        await self.shutdown(reason or "session ended")

    async def _wire(self) -> None:
        config = self.config

        transcriber = await self._signal.guard(self._providers.connect_transcriber(config))
        stt = DeepgramSTT(transcriber, self._signal, outputs=[self._agent_in], on_fatal=self._on_stage_fatal)
        self._stages.append(stt)

        chat = self._providers.chat(config)
        gate = TurnGate() if config.filler_enabled and config.suppress_stale_filler else None
        agent = AgentStage(
            chat,
            self._signal,
            self._replies,
            system_prompt=config.agent_system_prompt,
            on_fatal=self._on_stage_fatal,
            max_inflight=config.max_inflight_responses,
            max_history_turns=config.max_history_turns,
            gate=gate,
        )
        self._agent = agent
        self._stages.append(agent)

        filler: Optional[FillerStage] = None
        if config.filler_enabled:
            filler = FillerStage(
                chat,
                self._signal,
                self._replies,
                history_view=agent.history_snapshot,
                gate=gate,
                on_fatal=self._on_stage_fatal,
                max_inflight=config.max_inflight_responses,
            )
            stt.add_output(self._filler_in)
            self._stages.append(filler)

        stt.start(self._audio)
        agent.start(self._agent_in)
        if filler:
            filler.start(self._filler_in)

        self._log.info("Call wired", filler=filler is not None)

    def on_stream_identified(self, stream_sid: str, call_sid: str = "") -> None:
        """Handle the telephony `start` event: build the outbound half and greet."""
        if self._state == SessionState.ACTIVE:
            self._log.warning("Duplicate start event ignored", stream_sid=stream_sid)
            return
        if self._state != SessionState.WIRING:
            self._log.debug("Start event after shutdown ignored", state=self._state.value)
            return
        if not stream_sid:
            self._log.warning("Start event without streamSid ignored")
            return

        self._metrics.stream_sid = stream_sid
        self._metrics.call_sid = call_sid
        self._log = logger.bind(call_sid=call_sid, stream_sid=stream_sid)

        synthesis = SynthesisStage(
            self._providers.synthesizer(self.config),
            self._signal,
            self._frames,
            max_concurrency=self.config.tts_max_concurrency,
            on_fatal=self._on_stage_fatal,
        )
        egress = TwilioEgress(
            self._connection,
            stream_sid,
            self._signal,
            on_fatal=self._on_stage_fatal,
            close_connection=self._close_connection,
        )
        self._stages.extend([synthesis, egress])
        synthesis.start(self._replies)
        egress.start(self._frames)

        self._set_state(SessionState.ACTIVE)
        self._log.info("Call started")

        greeting = (self.config.greeting_text or "").strip()
        if greeting:
            if self._agent:
                self._agent.record_assistant_message(greeting)
            self._replies.put_nowait(ReplyFragment(greeting, source="greeting", turn=0))

    async def _ingress(self) -> None:
        reason = "telephony connection closed"
        try:
            while True:
                raw = await self._signal.guard(self._connection.receive_text())
                if await self._handle_message(raw):
                    reason = "stop event"
                    break
        except ResourceError:
            return
        except StreamError as e:
            reason = f"telephony connection lost: {e}"
        except Exception as e:
            self._log.exception("Ingress failed")
            reason = f"ingress failed: {type(e).__name__}"

        self.request_shutdown(reason)

    async def _handle_message(self, raw: str) -> bool:
        """Handle one Twilio message. Returns True when the stream has stopped."""
        try:
            event_type, event = parse_twilio_message(raw)
        except UnknownEventError as e:
            self._metrics.unknown_events += 1
            self._log.debug("Ignoring unknown Twilio event", event_type=e.event_type)
            return False
        except ProtocolError as e:
            self._metrics.malformed_messages += 1
            self._log.warning("Skipping malformed Twilio message", error=str(e))
            return False

        if event_type == TwilioEventType.CONNECTED:
            self._log.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            self.on_stream_identified(event.stream_sid, event.call_sid)

        elif event_type == TwilioEventType.MEDIA:
            if event.payload:
                if self._metrics.media_messages == 0:
                    self._log.info("Inbound media received", bytes=len(event.payload), track=event.track)
                self._metrics.media_messages += 1
                self._metrics.audio_bytes_in += len(event.payload)
                await send(self._audio, event.payload, self._signal)

        elif event_type == TwilioEventType.MARK:
            self._metrics.marks_acked += 1
            self._log.debug("Twilio mark ack", mark_name=event.name)

        elif event_type == TwilioEventType.DTMF:
            self._log.info("DTMF received", digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            self._log.info("Twilio stream stopped")
            return True

        return False

    def _on_stage_fatal(self, stage_name: str, error: BaseException) -> None:
        self._log.error("Stage reported fatal error", stage=stage_name, error=str(error))
        self.request_shutdown(f"{stage_name} failed: {error}")

    def request_shutdown(self, reason: str) -> None:
        """Begin teardown without waiting for it."""
        self._start_teardown(reason)

    async def shutdown(self, reason: str) -> None:
        """Tear the call down. Every caller awaits the same, single teardown."""
        await asyncio.shield(self._start_teardown(reason))

    def _start_teardown(self, reason: str) -> asyncio.Task:
        if self._teardown_task is None:
            self._signal.fire(reason)
            self._teardown_task = asyncio.create_task(self._teardown(reason), name="session:teardown")
        return self._teardown_task

    async def _teardown(self, reason: str) -> None:
        self._set_state(SessionState.DRAINING)
        self._metrics.close_reason = reason
        self._log.info("Call session draining", reason=reason)

        for stage in reversed(self._stages):
            try:
                await stage.stop()
            except Exception as e:
                self._log.warning("Error stopping stage", stage=stage.name, error=str(e))

        for channel in self._channels:
            channel.close()

        ingress = self._ingress_task
        if ingress and not ingress.done():
            ingress.cancel()
            await asyncio.gather(ingress, return_exceptions=True)

        await self._close_connection()

        self._metrics.end_time = time.time()
        self._set_state(SessionState.CLOSED)
        self._log.info("Call session closed", metrics=self._metrics.to_dict())

    async def _close_connection(self) -> None:
        if self._connection_closed:
            return
        self._connection_closed = True
        try:
            await self._connection.close()
        except Exception as e:
            self._log.debug("Error closing telephony connection", error=str(e))
