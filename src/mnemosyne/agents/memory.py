"""
Bounded conversation memory with summarizing compaction.

When the message count exceeds the maximum, the oldest block of messages
is replaced by a single system-role note. The note is produced by the
injected summarizer (normally a call to the agent's own provider); if that
fails an extractive note is used instead, so compaction never drops
history without a trace.
"""

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Optional

from mnemosyne.llm.types import Message

logger = logging.getLogger(__name__)

Summarizer = Callable[[list[Message]], Awaitable[str]]

SUMMARY_PREFIX = "[Conversation summary]"
SUMMARY_PROMPT = """Summarize the following conversation in a few sentences.
Keep names, decisions, facts and open questions. Write in the third person.

{conversation}

Summary:"""
EXTRACT_LENGTH = 100


def render_conversation(messages: list[Message]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def extractive_summary(messages: list[Message]) -> str:
    """Fallback summary: the first sentence-ish slice of each message."""
    lines = []
    for message in messages:
        text = " ".join(message.content.split())
        if len(text) > EXTRACT_LENGTH:
            text = text[:EXTRACT_LENGTH].rstrip() + "..."
        lines.append(f"- {message.role}: {text}")
    return "\n".join(lines)


class ConversationMemory:
    """
    Ordered role-tagged messages for one agent session.

    Example:
        >>> memory = ConversationMemory(max_messages=4, summarizer=summarize)
        >>> await memory.add(Message("user", "Hi"))
    """

    def __init__(self, max_messages: Optional[int] = None, summarizer: Optional[Summarizer] = None) -> None:
        from mnemosyne.config import settings

        self.max_messages = max_messages or settings.memory_max_messages
        if self.max_messages < 2:
            raise ValueError("max_messages must be at least 2")
        self.summarizer = summarizer
        self._messages: list[Message] = []
        self._lock = asyncio.Lock()
        self.summaries_created = 0

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    async def add(self, message: Message) -> None:
        """Append a message, compacting if the maximum is exceeded."""
        async with self._lock:
            self._messages.append(message)
            if len(self._messages) > self.max_messages:
                await self._compact()

    async def extend(self, messages: list[Message]) -> None:
        for message in messages:
            await self.add(message)

    async def _compact(self) -> None:
        block_size = max(2, len(self._messages) - self.max_messages + 1)
        block = self._messages[:block_size]

        summary = None
        if self.summarizer is not None:
            try:
                summary = (await self.summarizer(block)).strip()
            except Exception as e:
                logger.warning(f"Memory summarization failed, using extractive summary: {e}")
        if not summary:
            summary = extractive_summary(block)

        note = Message(role="system", content=f"{SUMMARY_PREFIX}\n{summary}")
        self._messages = [note] + self._messages[block_size:]
        self.summaries_created += 1
        logger.debug(f"Compacted {block_size} messages into one summary note")

    def clear(self) -> None:
        self._messages = []

    def estimate_tokens(self) -> int:
        return sum(math.ceil(len(m.content) / 4) for m in self._messages)

    def status(self) -> dict[str, Any]:
        return {
            "message_count": len(self._messages),
            "max_messages": self.max_messages,
            "estimated_tokens": self.estimate_tokens(),
            "summaries_created": self.summaries_created,
        }
