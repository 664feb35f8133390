from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator


class TTSProvider(ABC):
    """Streaming speech synthesis: text in, Twilio-ready audio chunks out."""

    name: str = "tts"

    @abstractmethod
    def synthesize_streaming(self, text: str) -> AsyncGenerator[bytes, None]:
        """
        Yield audio chunks in the order the provider emits them.

        Raises ProtocolError for a malformed or rejected response and
        StreamError when the connection to the provider fails.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None
