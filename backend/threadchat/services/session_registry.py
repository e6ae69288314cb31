"""Per-chat conversation handles."""

import logging
from typing import Callable

from fastapi import Request

from threadchat.services.llm_service import ConversationHandle, LLMService, get_llm_service

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Maps chat ids to their conversation handle.

    There is at most one handle per chat. Handles are created lazily, bound to
    the model configured at creation time, and only go away through clear(),
    clear_all() or a model change; there is no background eviction. The map
    is touched only from the event loop, so no lock is taken.
    """

    def __init__(self, model: str, llm_provider: Callable[[], LLMService] = get_llm_service):
        self._model = model
        self._llm_provider = llm_provider
        self._handles: dict[str, ConversationHandle] = {}

    @property
    def model(self) -> str:
        return self._model

    def get(self, chat_id: str) -> ConversationHandle | None:
        return self._handles.get(chat_id)

    def get_or_create(self, chat_id: str) -> ConversationHandle:
        handle, _ = self.get_or_create_with_status(chat_id)
        return handle

    def get_or_create_with_status(self, chat_id: str) -> tuple[ConversationHandle, bool]:
        """Return the chat's handle and whether it was created by this call."""
        handle = self._handles.get(chat_id)
        if handle is not None:
            return handle, False
        handle = self._llm_provider().create_conversation(self._model)
        self._handles[chat_id] = handle
        logger.info("Conversation for chat %s created on %s", chat_id, self._model)
        return handle, True

    def clear(self, chat_id: str) -> None:
        if self._handles.pop(chat_id, None) is not None:
            logger.info("Conversation for chat %s cleared", chat_id)

    def clear_all(self) -> int:
        count = len(self._handles)
        self._handles.clear()
        return count

    def clear_all_on_model_change(self, new_model: str) -> int:
        """
        Rebind to new_model and drop every handle.

        Dialogue state belongs to the model that produced it, so no handle
        survives a switch. Returns the number of handles dropped.
        """
        if new_model == self._model:
            return 0
        dropped = self.clear_all()
        logger.info(
            "Model changed from %s to %s, dropped %d conversation(s)",
            self._model,
            new_model,
            dropped,
        )
        self._model = new_model
        return dropped

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry
