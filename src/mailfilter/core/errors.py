"""Exception types for mailfilter.

Error messages say what failed, where, and how to fix it when a fix exists
(for example "run 'mailfilter login'").
"""


class MailFilterError(Exception):
    """Base exception for all mailfilter errors."""

    pass


class ConfigValidationError(MailFilterError):
    """Raised when config.yaml fails Pydantic validation."""

    pass


class ConfigLoadError(MailFilterError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailFilterError):
    """Raised when the mailbox is not authenticated or tokens cannot be acquired.

    The watcher refuses to start on this error and a poll becomes a no-op.
    Recovery needs an interactive login.
    """

    pass


class GraphAPIError(MailFilterError):
    """Raised when Microsoft Graph API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ConflictError(GraphAPIError):
    """Raised on 412 Precondition Failed (ETag mismatch during a write)."""

    def __init__(self, message: str, resource_id: str | None = None):
        super().__init__(message, status_code=412, error_code="PreconditionFailed")
        self.resource_id = resource_id


class SyncExpiredError(GraphAPIError):
    """Raised when a sync cursor can no longer be resolved by the mail service.

    Graph answers 410 Gone for a delta token it has discarded. The sync
    resolver recovers by falling back to a full sync in the same cycle.
    """

    def __init__(self, message: str, folder: str | None = None):
        super().__init__(message, status_code=410, error_code="SyncStateNotFound")
        self.folder = folder


class RateLimitExceeded(MailFilterError):
    """Raised when the rate limiter would require an excessive wait (>20 seconds)."""

    pass


class ClassificationError(MailFilterError):
    """Raised inside the classifier when a model response is unusable.

    Never escapes ClaudeClassifier.classify(); it is turned into the
    REVIEW fallback result there.
    """

    def __init__(self, message: str, message_id: str | None = None):
        super().__init__(message)
        self.message_id = message_id


class MessageProcessingError(MailFilterError):
    """Raised when fetching, classifying or acting on one message fails.

    Attributes:
        message_id: Mailbox id of the message that failed
    """

    def __init__(self, message: str, message_id: str):
        super().__init__(message)
        self.message_id = message_id


class PersistenceError(MailFilterError):
    """Raised when watcher state cannot be read from or written to SQLite."""

    pass
