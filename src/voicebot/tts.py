from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Optional

import structlog

from src.voicebot.channel import Channel, ShutdownSignal, receive, send
from src.voicebot.config import Config, get_config
from src.voicebot.errors import ChannelClosed, ProtocolError
from src.voicebot.stage import FatalCallback, PipelineStage
from src.voicebot.tts_providers.base import TTSProvider
from src.voicebot.tts_providers.elevenlabs import ElevenLabsTTS
from src.voicebot.tts_types import AudioFrame, OutboundAudio, ReplyFragment, UtteranceMark

logger = structlog.get_logger(__name__)


def create_synthesizer(config: Optional[Config] = None) -> TTSProvider:
    """Create the per-call synthesis provider."""
    config = config or get_config()
    logger.debug("Creating synthesizer", voice_id=config.elevenlabs_voice_id)
    return ElevenLabsTTS(config)


@dataclass
class _SynthesisJob:
    fragment: ReplyFragment
    buffer: Channel[bytes]
    error: Optional[Exception] = None
    started_at: float = field(default_factory=time.time)


class SynthesisStage(PipelineStage):
    """
    Reply fragments in, audio frames and utterance marks out.

    Up to `max_concurrency` fragments synthesize at once. A single forwarder
    drains them in arrival order, so each fragment's frames stay contiguous
    and its mark follows its last frame. A failed fragment forwards only the
    frames that went out before its failure was known. It gets no mark and
    does not stop the stage.
    """

    name = "tts"

    def __init__(
        self,
        provider: TTSProvider,
        signal: ShutdownSignal,
        output: Channel[OutboundAudio],
        max_concurrency: int = 2,
        on_fatal: Optional[FatalCallback] = None,
    ):
        super().__init__(signal, on_fatal)
        self._provider = provider
        self._output = output
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._pending: Channel[_SynthesisJob] = Channel("tts-pending")
        self._forwarding = asyncio.Lock()
        self._utterances = 0
        self.fragments_synthesized = 0
        self.fragments_failed = 0
        self.frames_sent = 0

    def start(self, fragments_in: Channel[ReplyFragment]) -> None:
        self._spawn_loop(self._ingest(fragments_in), name="ingest")
        self._spawn_loop(self._forward(), name="forward")
        logger.info("Synthesis stage started", provider=self._provider.name)

    async def on_fragment(self, fragment: ReplyFragment) -> Optional[Exception]:
        """
        Synthesize one fragment and forward its audio.

        Returns the fragment's failure, or None when every frame and the
        closing mark were forwarded. Takes a synthesis slot and waits for the
        running forwarder, so its output never interleaves with another
        fragment's.
        """
        await self._signal.guard(self._slots.acquire())
        try:
            job = self._submit(fragment)
            async with self._forwarding:
                return await self._forward_job(job)
        finally:
            self._slots.release()

    def _submit(self, fragment: ReplyFragment) -> _SynthesisJob:
        job = _SynthesisJob(fragment=fragment, buffer=Channel(f"tts-{fragment.source}-{fragment.turn}"))
        self._spawn(self._synthesize(job), name=f"synthesize-{fragment.source}-{fragment.turn}")
        return job

    async def _ingest(self, fragments_in: Channel[ReplyFragment]) -> None:
        while True:
            fragment = await receive(fragments_in, self._signal)
            await self._signal.guard(self._slots.acquire())
            try:
                await send(self._pending, self._submit(fragment), self._signal)
            except BaseException:
                self._slots.release()
                raise

    async def _forward(self) -> None:
        while True:
            job = await receive(self._pending, self._signal)
            try:
                async with self._forwarding:
                    await self._forward_job(job)
            finally:
                self._slots.release()

    async def _synthesize(self, job: _SynthesisJob) -> None:
        try:
            async with aclosing(self._provider.synthesize_streaming(job.fragment.text)) as chunks:
                async for chunk in chunks:
                    if chunk:
                        job.buffer.put_nowait(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.error = e
        finally:
            job.buffer.close()

    async def _forward_job(self, job: _SynthesisJob) -> Optional[Exception]:
        frames = 0
        while True:
            try:
                chunk = await self._signal.guard(job.buffer.get())
            except ChannelClosed:
                break
            if job.error is not None:
                # Abandon whatever is still buffered for a failed fragment.
                break
            await send(self._output, AudioFrame(chunk), self._signal)
            frames += 1
            self.frames_sent += 1

        if job.error is not None:
            self._report_failure(job, frames)
            return job.error

        self._utterances += 1
        mark = UtteranceMark(f"utterance-{self._utterances}")
        await send(self._output, mark, self._signal)
        self.fragments_synthesized += 1

        logger.debug(
            "Fragment synthesized",
            source=job.fragment.source,
            turn=job.fragment.turn,
            frames=frames,
            mark=mark.name,
            total_ms=round((time.time() - job.started_at) * 1000, 2),
        )
        return None

    def _report_failure(self, job: _SynthesisJob, frames: int) -> None:
        self.fragments_failed += 1
        error = job.error
        if isinstance(error, ProtocolError):
            logger.warning(
                "Fragment synthesis failed",
                source=job.fragment.source,
                turn=job.fragment.turn,
                frames_sent=frames,
                error=str(error),
            )
            return
        # Connection-level or unexpected failure: the provider is unusable.
        self._fatal(error)

    async def _close_resources(self) -> None:
        self._pending.close()
        await self._provider.close()
        logger.info(
            "Synthesis stage closed",
            synthesized=self.fragments_synthesized,
            failed=self.fragments_failed,
            frames=self.frames_sent,
        )
