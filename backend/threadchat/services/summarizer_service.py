"""
Seed a fresh conversation from persisted chat history.

Instead of replaying N persisted messages as N turns, the most recent window
is folded into one compact text that is sent as a single turn. Older messages
are dropped on purpose and each body is cut to a fixed character budget; the
newest message is repeated in full when it had to be cut.
"""

import logging
from typing import Sequence

from threadchat.models.chat import MessageResponse
from threadchat.services.llm_service import ConversationHandle

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 20
DEFAULT_CHAR_LIMIT = 150
SUMMARY_HEADER = "Conversation history summary:"


def _clip(text: str, limit: int) -> str:
    if len(text) > limit:
        return f'"{text[:limit]}..."'
    return f'"{text}"'


def summarize(
    messages: Sequence[MessageResponse],
    window: int = DEFAULT_WINDOW,
    char_limit: int = DEFAULT_CHAR_LIMIT,
) -> str:
    """
    Fold the last `window` messages into one seed text.

    Returns an empty string when there is nothing to summarize.
    """
    recent = list(messages)[-window:] if window > 0 else []
    if not recent:
        return ""

    entries = [SUMMARY_HEADER]
    for msg in recent:
        if msg.is_ai:
            entries.append(f"AI said: {_clip(msg.content, char_limit)}")
        else:
            line = f"User said: {_clip(msg.content, char_limit)}"
            if msg.attachments:
                line += f" [User shared {len(msg.attachments)} file(s)]"
            entries.append(line)

    last = recent[-1]
    if len(last.content) > char_limit:
        speaker = "AI's" if last.is_ai else "User's"
        entries.append(f'{speaker} last complete message was: "{last.content}"')

    return "\n\n".join(entries) + "\n\n"


async def seed_handle(
    handle: ConversationHandle,
    messages: Sequence[MessageResponse],
    window: int = DEFAULT_WINDOW,
    char_limit: int = DEFAULT_CHAR_LIMIT,
) -> bool:
    """
    Send the history summary to a fresh handle as one turn.

    Best effort: a failure costs context, not the send, so errors are logged
    and reported as False.
    """
    seed = summarize(messages, window=window, char_limit=char_limit)
    if not seed:
        return False
    try:
        await handle.send(seed)
    except Exception:
        logger.warning("Seeding conversation history failed", exc_info=True)
        return False
    logger.info(
        "Seeded conversation with %d of %d message(s), %d characters",
        min(len(messages), window),
        len(messages),
        len(seed),
    )
    return True
