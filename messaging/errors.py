class MessagingError(Exception):
    pass


class EmptyMessage(MessagingError):
    """Raised before any network call when there is neither text nor a valid attachment."""

    def __init__(self, rejected=()):
        self.rejected = list(rejected)
        super().__init__("Message has no content and no valid attachments")


class ApiError(MessagingError):
    def __init__(self, status: int, message: str, path: str = ""):
        self.status = status
        self.message = message
        self.path = path
        super().__init__(f"{status} {path}: {message}")


class SendFailed(MessagingError):
    """A send was rolled back. Carries the draft so the user can retry without retyping."""

    def __init__(self, message: str, failed, draft, cause: BaseException | None = None):
        self.user_message = message
        self.failed = failed
        self.draft = draft
        self.cause = cause
        super().__init__(message)


class SendUnconfirmed(MessagingError):
    """The server accepted a send but its response could not be read back.

    The message exists on the server, so it must not be retried; the next
    history load shows it.
    """

    def __init__(self, pending, cause: BaseException | None = None):
        self.pending = pending
        self.cause = cause
        super().__init__(f"Send {pending.local_id} was accepted but not confirmed: {cause}")
