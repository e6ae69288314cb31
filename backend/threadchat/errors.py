"""Exception hierarchy shared by the threadchat services."""


class ThreadChatError(Exception):
    """Base error type."""


class EmptyMessageError(ThreadChatError):
    """Raised when a send carries neither text nor attachments."""
    pass


class SendInProgressError(ThreadChatError):
    """Raised when a chat already has a message waiting on the model."""

    def __init__(self, chat_id: str):
        super().__init__(f"A message is already being sent in chat {chat_id}")
        self.chat_id = chat_id


class PersistenceError(ThreadChatError):
    """A PostgREST request was rejected."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def mentions(self, field: str) -> bool:
        return field.lower() in self.message.lower()


class StorageError(ThreadChatError):
    pass


class AuthError(ThreadChatError):
    """The account API refused the request; the user has to sign in again."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code
