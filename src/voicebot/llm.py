"""
OpenAI-compatible LLM client with streaming support.

Provides:
- Streaming chat completions (OpenAI or Groq via base URL)
- Conversation history with a rolling window
- Sentence segmentation of streamed deltas
- System prompts for the agent and filler responders
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Protocol

import openai
import structlog
from openai import AsyncOpenAI

from src.voicebot.config import Config, get_config
from src.voicebot.errors import ProtocolError, StreamError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

FILLER_WORDS = (
    "uh, um, er, erm, ah, oh, uh-huh, hmm, mm, mmm, yeah, yep, y'know, like, well, so, "
    "actually, basically, literally, seriously, honestly, frankly, admittedly, anyway, "
    "anyways, sort of, kind of, you see, I mean, let's see, if you will, as it were, now, "
    "then, meanwhile, perhaps, maybe, you know, right, okay, gotcha, sure, alright, wow, "
    "oops, sigh, gasp, hmm-mm, oh-no, ah-ha"
)

FILLER_SYSTEM_PROMPT = f"""You are given a user's spontaneous utterance as the next input plus the following list of common human filler-words:

{FILLER_WORDS}

Your task is to choose the single filler-word from that list that a person would most likely utter immediately after the given input. Return **only** that one word - no punctuation, no extra text. Do not include examples, explanations, or formatting - just the bare filler-word."""

# A run of non-terminal characters closed by sentence-terminal punctuation.
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]")


def _speakable(text: str) -> bool:
    return any(ch.isalnum() for ch in text)


class SentenceSplitter:
    """
    Collates streamed text deltas into complete sentences.

    Partial text is buffered across `feed()` calls; `flush()` returns the
    non-empty leftover once the stream has ended.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> List[str]:
        self._buffer += chunk
        sentences: List[str] = []
        while True:
            match = _SENTENCE_RE.match(self._buffer)
            if not match:
                break
            sentence = match.group(0).strip()
            if _speakable(sentence):
                sentences.append(sentence)
            self._buffer = self._buffer[match.end():]
        return sentences

    def flush(self) -> Optional[str]:
        leftover = self._buffer.strip()
        self._buffer = ""
        return leftover if _speakable(leftover) else None

    def discard(self) -> None:
        self._buffer = ""


def split_sentences(text: str) -> List[str]:
    """Split a complete text into speakable sentences."""
    splitter = SentenceSplitter()
    sentences = splitter.feed(text)
    leftover = splitter.flush()
    if leftover:
        sentences.append(leftover)
    return sentences


@dataclass
class ConversationTurn:
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """Manages conversation history with a rolling window."""

    def __init__(self, max_turns: int = 10):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []

    def add_user_message(self, content: str) -> None:
        """Add a user message."""
        self._turns.append(ConversationTurn(role="user", content=content))
        self._trim()

    def add_assistant_message(self, content: str) -> None:
        """Add an assistant message."""
        self._turns.append(ConversationTurn(role="assistant", content=content))
        self._trim()

    def _trim(self) -> None:
        """Trim history to max turns."""
        # Keep pairs of turns (user + assistant)
        max_messages = self.max_turns * 2
        if len(self._turns) > max_messages:
            self._turns = self._turns[-max_messages:]

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format (a fresh copy)."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in self._turns
        ]

    def __len__(self) -> int:
        return len(self._turns)


class ChatClient(Protocol):
    """Streaming chat-completion capability used by the responders."""

    def stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]: ...


class OpenAIChat:
    """
    Streaming chat client for OpenAI-compatible APIs.

    Connection-level failures raise StreamError; rejected requests (bad
    status, malformed request) raise ProtocolError.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.llm_model
        self._client = client or AsyncOpenAI(
            api_key=config.llm_api_key,
            base_url=GROQ_BASE_URL if config.llm_provider == "groq" else None,
            timeout=config.provider_timeout_seconds,
            max_retries=0,
        )

    async def stream(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: int = 256,
        temperature: float = 0.7,
    ) -> AsyncGenerator[str, None]:
        """
        Stream a completion for `messages`.

        Yields:
            Text deltas as they're generated
        """
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=max_tokens,  # Keep responses short for voice
                temperature=temperature,
            )
        except openai.APIConnectionError as e:
            raise StreamError(f"LLM connection failed: {e}") from e
        except openai.APIError as e:
            raise ProtocolError(f"LLM request rejected: {e}") from e

        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.APIConnectionError as e:
            raise StreamError(f"LLM stream dropped: {e}") from e
        except openai.APIError as e:
            raise ProtocolError(f"LLM stream error: {e}") from e
        finally:
            # Aborts the HTTP response when the consumer is cancelled.
            await stream.close()


def create_chat_client(config: Optional[Config] = None) -> OpenAIChat:
    """Create the chat client for the configured provider."""
    config = config or get_config()
    logger.debug("Creating chat client", provider=config.llm_provider, model=config.llm_model)
    return OpenAIChat(config)
