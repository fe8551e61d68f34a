"""Error taxonomy of the direct-message core.

The HTTP layer maps each kind to a status code; services never retry them.
"""


class ParleyError(Exception):
    """Base class for errors surfaced to the caller as final outcomes."""

    status_code = 400

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ValidationError(ParleyError):
    """Malformed or missing input, e.g. a message with neither body nor image."""

    status_code = 422


class NotFoundError(ParleyError):
    """Conversation, message, user or reply target does not exist."""

    status_code = 404


class AuthorizationError(ParleyError):
    """Actor may not access or modify the resource."""

    status_code = 403


class ConflictError(ParleyError):
    """Lost a concurrent modification race, or the resource is deleted."""

    status_code = 409
