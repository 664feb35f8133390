"""
Response generation stages: the agent and the filler.

Both consume final transcripts, stream a chat completion per transcript and
push complete sentences onto the shared reply channel. Each transcript gets
its own task; a per-stage semaphore caps how many run at once, and excess
transcripts wait for a free slot.

The agent owns the conversation history. The filler only reads snapshots of
it, and drops its fragment for a turn once the agent has started speaking
for that turn.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Callable, Dict, List, Optional, Set

import structlog

from src.voicebot.channel import Channel, ShutdownSignal, receive, send
from src.voicebot.errors import ProtocolError, ResourceError, StreamError
from src.voicebot.llm import (
    FILLER_SYSTEM_PROMPT,
    ChatClient,
    ConversationHistory,
    SentenceSplitter,
)
from src.voicebot.stage import FatalCallback, PipelineStage
from src.voicebot.tts_types import ReplyFragment

logger = structlog.get_logger(__name__)

Messages = List[Dict[str, str]]


class TurnGate:
    """Records which turns the agent has started answering."""

    def __init__(self) -> None:
        self._agent_started: Set[int] = set()

    def mark_agent_started(self, turn: int) -> None:
        self._agent_started.add(turn)

    def agent_started(self, turn: int) -> bool:
        return turn in self._agent_started

    def forget_before(self, turn: int) -> None:
        """Drop turns older than `turn`; the filler never asks about them again."""
        self._agent_started = {t for t in self._agent_started if t >= turn}


class ResponderStage(PipelineStage):
    """Shared machinery for the agent and filler stages."""

    source = "responder"

    def __init__(
        self,
        chat: ChatClient,
        signal: ShutdownSignal,
        output: Channel[ReplyFragment],
        on_fatal: Optional[FatalCallback] = None,
        max_inflight: int = 2,
    ):
        super().__init__(signal, on_fatal)
        self._chat = chat
        self._output = output
        self._slots = asyncio.Semaphore(max_inflight)
        self._turn_count = 0
        self.fragments_sent = 0

    @property
    def turn_count(self) -> int:
        return self._turn_count

    def start(self, transcripts_in: Channel[str]) -> None:
        self._spawn_loop(self._dispatch(transcripts_in), name="dispatch")
        logger.info("Responder stage started", stage=self.name)

    async def _dispatch(self, transcripts_in: Channel[str]) -> None:
        while True:
            text = await receive(transcripts_in, self._signal)
            await self.on_transcript(text)

    async def on_transcript(self, text: str) -> Optional[asyncio.Task]:
        """Start a response for `text`, waiting for a free slot first."""
        text = (text or "").strip()
        if not text:
            return None

        await self._signal.guard(self._slots.acquire())
        self._turn_count += 1
        turn = self._turn_count
        self._on_dispatch(turn, text)
        return self._spawn(self._respond(turn, text), name=f"turn-{turn}")

    def _on_dispatch(self, turn: int, text: str) -> None:
        return None

    def _on_complete(self, turn: int, text: str) -> None:
        return None

    def _build_messages(self, text: str) -> Messages:
        raise NotImplementedError

    def _should_emit(self, turn: int) -> bool:
        return True

    async def _emit(self, turn: int, sentence: str) -> None:
        if not self._should_emit(turn):
            return
        await send(self._output, ReplyFragment(sentence, source=self.source, turn=turn), self._signal)
        self.fragments_sent += 1

    async def _respond(self, turn: int, text: str) -> None:
        splitter = SentenceSplitter()
        parts: List[str] = []
        try:
            async with aclosing(self._chat.stream(self._build_messages(text))) as deltas:
                async for delta in deltas:
                    parts.append(delta)
                    for sentence in splitter.feed(delta):
                        await self._emit(turn, sentence)

            leftover = splitter.flush()
            if leftover:
                await self._emit(turn, leftover)

            self._on_complete(turn, "".join(parts).strip())
            logger.debug("Response complete", stage=self.name, turn=turn)

        except asyncio.CancelledError:
            splitter.discard()
            logger.debug("Response cancelled", stage=self.name, turn=turn)
            raise
        except ResourceError:
            splitter.discard()
            logger.debug("Response abandoned during shutdown", stage=self.name, turn=turn)
        except ProtocolError as e:
            splitter.discard()
            logger.warning("Dropping turn after LLM error", stage=self.name, turn=turn, error=str(e))
        except StreamError as e:
            splitter.discard()
            self._fatal(e)
        except Exception as e:
            splitter.discard()
            logger.exception("Unexpected responder error", stage=self.name, turn=turn)
            self._fatal(e)
        finally:
            self._slots.release()


class AgentStage(ResponderStage):
    """Answers the caller; sole writer of the conversation history."""

    name = "agent"
    source = "agent"

    def __init__(
        self,
        chat: ChatClient,
        signal: ShutdownSignal,
        output: Channel[ReplyFragment],
        system_prompt: str,
        on_fatal: Optional[FatalCallback] = None,
        max_inflight: int = 2,
        max_history_turns: int = 10,
        gate: Optional[TurnGate] = None,
    ):
        super().__init__(chat, signal, output, on_fatal=on_fatal, max_inflight=max_inflight)
        self.system_prompt = system_prompt
        self._history = ConversationHistory(max_turns=max_history_turns)
        self._gate = gate

    def history_snapshot(self) -> Messages:
        """Read-only copy of the conversation so far."""
        return self._history.get_messages()

    def record_assistant_message(self, text: str) -> None:
        """Append text spoken outside a turn (e.g. the greeting)."""
        self._history.add_assistant_message(text)

    def _on_dispatch(self, turn: int, text: str) -> None:
        self._history.add_user_message(text)
        logger.info("Agent turn dispatched", turn=turn, text=text)

    def _on_complete(self, turn: int, text: str) -> None:
        if text:
            self._history.add_assistant_message(text)

    def _build_messages(self, text: str) -> Messages:
        # The user turn was appended on dispatch.
        return [{"role": "system", "content": self.system_prompt}] + self._history.get_messages()

    async def _emit(self, turn: int, sentence: str) -> None:
        if self._gate:
            self._gate.mark_agent_started(turn)
        await super()._emit(turn, sentence)


class FillerStage(ResponderStage):
    """Speaks a short filler word while the agent's answer is still streaming."""

    name = "filler"
    source = "filler"

    def __init__(
        self,
        chat: ChatClient,
        signal: ShutdownSignal,
        output: Channel[ReplyFragment],
        history_view: Optional[Callable[[], Messages]] = None,
        gate: Optional[TurnGate] = None,
        on_fatal: Optional[FatalCallback] = None,
        max_inflight: int = 2,
        system_prompt: str = FILLER_SYSTEM_PROMPT,
    ):
        super().__init__(chat, signal, output, on_fatal=on_fatal, max_inflight=max_inflight)
        self.system_prompt = system_prompt
        self._history_view = history_view
        self._gate = gate
        self.suppressed = 0
        self._open_turns: Set[int] = set()

    def _build_messages(self, text: str) -> Messages:
        context = self._history_view() if self._history_view else []
        # Drop user turns the agent has not answered yet; the current one is re-added below.
        while context and context[-1]["role"] == "user":
            context.pop()
        return (
            [{"role": "system", "content": self.system_prompt}]
            + context
            + [{"role": "user", "content": text}]
        )

    def _on_dispatch(self, turn: int, text: str) -> None:
        self._open_turns.add(turn)

    async def _respond(self, turn: int, text: str) -> None:
        try:
            await super()._respond(turn, text)
        finally:
            self._open_turns.discard(turn)
            if self._gate:
                self._gate.forget_before(min(self._open_turns, default=self._turn_count + 1))

    def _should_emit(self, turn: int) -> bool:
        if self._gate and self._gate.agent_started(turn):
            self.suppressed += 1
            logger.debug("Filler suppressed, agent already speaking", turn=turn)
            return False
        return True
