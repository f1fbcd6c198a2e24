class LibraryError(Exception):
    """Base error. ``identifiers`` names the book/shelf/lease involved."""

    code = "error"
    http_status = 400

    def __init__(self, message, code=None, **identifiers):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.identifiers = {k: v for k, v in identifiers.items() if v is not None}

    def to_dict(self):
        body = {"error": self.code, "message": self.message}
        body.update(self.identifiers)
        return body


class ValidationError(LibraryError):
    """Malformed input, rejected before any state is touched."""

    code = "invalid"
    http_status = 400


class NotFoundError(LibraryError):
    code = "not_found"
    http_status = 404


class NotOwnerError(LibraryError):
    """The actor may not act on someone else's lease or notification."""

    code = "not_owner"
    http_status = 403


class ConflictError(LibraryError):
    """Lease or book already in an incompatible state. Never retried."""

    code = "conflict"
    http_status = 409


class StaleReadError(LibraryError):
    """
    A precondition stopped holding between read and commit. Retried inside
    ``db.atomic`` and only surfaced once the retries run out.
    """

    code = "stale_read"
    http_status = 503
