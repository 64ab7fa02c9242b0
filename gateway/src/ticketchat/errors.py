from __future__ import annotations


class ChatError(Exception):
    """Base class for errors surfaced to chat callers.

    ``status`` and ``code`` are what the HTTP transport puts on the wire; the
    exception message is the caller-facing text.
    """

    status = 500
    code = "internal_error"


class ValidationError(ChatError):
    status = 400
    code = "invalid_request"


class MessageDeleted(ValidationError):
    pass


class ProfileRequired(ChatError):
    status = 401
    code = "unauthorized"


class AuthorizationError(ChatError):
    status = 403
    code = "forbidden"


class NotFoundError(ChatError):
    status = 404
    code = "not_found"


class RateLimitError(ChatError):
    status = 429
    code = "rate_limited"


class UpstreamError(ChatError):
    """A blockchain RPC or datastore call failed.

    The message stays generic; the cause is chained for server-side logs.
    """

    status = 500
    code = "upstream_error"
