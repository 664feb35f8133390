from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ReplyFragment:
    """
    One independently speakable piece of assistant text.

    `source` is the producer ("agent", "filler" or "greeting"); `turn` is the
    transcript number that produced it (0 for the greeting).
    """

    text: str
    source: str = "agent"
    turn: int = 0


@dataclass(frozen=True)
class AudioFrame:
    """A chunk of synthesized audio, Twilio-ready mu-law (8kHz)."""

    payload: bytes


@dataclass(frozen=True)
class UtteranceMark:
    """Every frame of the current fragment has been sent."""

    name: str


OutboundAudio = Union[AudioFrame, UtteranceMark]
