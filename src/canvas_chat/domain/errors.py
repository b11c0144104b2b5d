"""Error taxonomy for the chat core.

Generation, validation and persistence failures surface to the user as error
banners. Policy rejections are synchronous, non-fatal refusals of a single
user action and carry the message shown to the user.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for all chat errors."""


class GenerationError(ChatError):
    """A generation ended without a usable terminal value."""

    def __init__(self, message: str, last_value=None):
        super().__init__(message)
        self.last_value = last_value


class TransportError(GenerationError):
    """The chunk stream was interrupted or the provider call failed."""


class DecodeError(GenerationError):
    """The terminal output does not match the response schema."""


class RequestValidationError(ChatError):
    """A request is missing a required field."""

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class PersistenceError(ChatError):
    """A store operation failed."""


class NotFoundError(ChatError):
    """A session or message does not exist."""


class UploadRejected(ChatError):
    """A file was rejected before upload."""

    def __init__(self, message: str, reason: str = "type"):
        super().__init__(message)
        self.reason = reason


class PolicyRejection(ChatError):
    """A user action refused by policy."""

    default_message = "Action not allowed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)


class EditWhileStreaming(PolicyRejection):
    default_message = "Cannot edit while document is being generated"


class SaveOrDiscardFirst(PolicyRejection):
    default_message = "Please save or discard changes before switching to reading mode"


class NotEditing(PolicyRejection):
    default_message = "Switch to editing mode first"


class NothingToSave(PolicyRejection):
    default_message = "No unsaved changes to save"


class NothingToDiscard(PolicyRejection):
    default_message = "No unsaved changes to discard"


class NoDocumentBound(PolicyRejection):
    default_message = "No saved document is open"


class AttachmentInFlight(PolicyRejection):
    default_message = "Only one file allowed. Remove the file to upload new file"


class SubmissionInFlight(PolicyRejection):
    default_message = "A response is still being generated"


class EmptyInput(PolicyRejection):
    default_message = "Message is empty"


class NoActiveSession(PolicyRejection):
    default_message = "No chat session selected"


class TimelineBusy(PolicyRejection):
    default_message = "Messages are still loading"
