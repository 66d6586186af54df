class ChatError(Exception):
    """Base class for errors the chat engine surfaces to callers."""

    status_code = 500
    code = "chat_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidParticipants(ChatError):
    status_code = 400
    code = "invalid_participants"


class InvalidMessage(ChatError):
    status_code = 422
    code = "invalid_message"


class NotParticipant(ChatError):
    status_code = 403
    code = "not_participant"


class ConversationNotFound(ChatError):
    status_code = 404
    code = "conversation_not_found"


class ProfileNotFound(ChatError):
    """Profile lookup miss. Recovered locally with a placeholder name."""

    status_code = 404
    code = "not_found"


class InitializationFailed(ChatError):
    status_code = 503
    code = "initialization_failed"


class SendFailed(ChatError):
    status_code = 503
    code = "send_failed"


class OperationTimeout(ChatError):
    status_code = 504
    code = "timeout"

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} exceeded its deadline")
        self.operation = operation
