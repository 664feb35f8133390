"""
Error taxonomy for the call pipeline.

- ConnectError: a provider could not be dialed while wiring a call.
- ProtocolError: one malformed message; drop it and keep the stream alive.
- StreamError: a connection dropped mid-call; fatal for the stage.
- ResourceError: use of something already torn down (closed channel,
  fired shutdown signal). Stages treat it as their normal exit path.

Configuration errors live in `src.voicebot.config` next to the loader.
"""

from __future__ import annotations

from typing import Optional


class VoicebotError(Exception):
    """Base class for pipeline errors."""

    default_detail: str = "Voice pipeline error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConnectError(VoicebotError):
    default_detail = "Failed to connect to provider"

    def __init__(self, provider: str, detail: Optional[str] = None) -> None:
        super().__init__(f"{provider}: {detail}" if detail else f"{provider}: {self.default_detail}")
        self.provider = provider


class ProtocolError(VoicebotError):
    default_detail = "Malformed message"


class UnknownEventError(ProtocolError):
    """Telephony event type we do not handle."""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


class StreamError(VoicebotError):
    default_detail = "Connection dropped"


class ResourceError(VoicebotError):
    default_detail = "Resource already closed"


class ChannelClosed(ResourceError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Channel '{name}' is closed")
        self.name = name


class SessionClosing(ResourceError):
    default_detail = "Session is shutting down"
