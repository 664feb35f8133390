"""
Tests for the Twilio egress stage.
"""

import asyncio
import base64

import pytest

from src.voicebot.channel import Channel, ShutdownSignal
from src.voicebot.egress import TwilioEgress
from src.voicebot.errors import StreamError
from src.voicebot.tts_types import AudioFrame, UtteranceMark


@pytest.mark.asyncio
async def test_frames_and_marks_become_twilio_events(telephony, eventually):
    frames = Channel("frames")
    egress = TwilioEgress(telephony, "SD1", ShutdownSignal())
    egress.start(frames)

    payloads = [b"\x01\x02", b"\x03", b"\xff" * 160]
    for payload in payloads:
        await frames.put(AudioFrame(payload))
    await frames.put(UtteranceMark("utterance-1"))

    await eventually(lambda: len(telephony.sent) == 4)
    events = telephony.sent_events()
    assert [e["event"] for e in events] == ["media", "media", "media", "mark"]
    assert all(e["streamSid"] == "SD1" for e in events)
    assert [base64.b64decode(e["media"]["payload"]) for e in events[:3]] == payloads
    assert events[3]["mark"] == {"name": "utterance-1"}

    assert egress.frames_sent == 3
    assert egress.marks_sent == 1
    await egress.stop()


@pytest.mark.asyncio
async def test_closed_input_ends_stage_and_closes_connection(telephony):
    frames = Channel("frames")
    egress = TwilioEgress(telephony, "SD1", ShutdownSignal())
    egress.start(frames)
    await frames.put(AudioFrame(b"\x01"))

    frames.close()
    await asyncio.wait_for(egress.wait(), 1.0)

    assert len(telephony.sent) == 1
    assert telephony.close_calls == 1


@pytest.mark.asyncio
async def test_signal_ends_stage(telephony):
    signal = ShutdownSignal()
    egress = TwilioEgress(telephony, "SD1", signal)
    egress.start(Channel("frames"))
    await asyncio.sleep(0)

    signal.fire("hangup")
    await asyncio.wait_for(egress.wait(), 1.0)

    assert telephony.close_calls == 1


@pytest.mark.asyncio
async def test_write_failure_is_fatal(telephony, eventually):
    telephony.fail_sends = True
    failures = []
    frames = Channel("frames")
    egress = TwilioEgress(
        telephony,
        "SD1",
        ShutdownSignal(),
        on_fatal=lambda name, error: failures.append((name, error)),
    )
    egress.start(frames)

    await frames.put(AudioFrame(b"\x01"))
    await frames.put(AudioFrame(b"\x02"))

    await eventually(lambda: len(failures) == 1)
    assert failures[0][0] == "egress"
    assert isinstance(failures[0][1], StreamError)
    assert egress.frames_sent == 0
    # Nothing after the failed frame is written.
    assert frames.qsize() == 1
    await egress.stop()


@pytest.mark.asyncio
async def test_custom_close_callback(telephony):
    closed = []

    async def close_once():
        closed.append(True)

    frames = Channel("frames")
    egress = TwilioEgress(telephony, "SD1", ShutdownSignal(), close_connection=close_once)
    egress.start(frames)
    await asyncio.sleep(0)

    await egress.stop()

    assert closed == [True]
    assert telephony.close_calls == 0
