"""
Error taxonomy for the lending core.

Services raise these; the Flask app turns them into JSON responses with the
class's status code. Only TransientError is safe to retry unchanged.
"""


class LibraryError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    @property
    def code(self):
        return type(self).__name__

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class NotFound(LibraryError):
    status_code = 404


class InvalidArgument(LibraryError):
    status_code = 400


class PreconditionFailed(LibraryError):
    status_code = 409


class InsufficientAvailable(PreconditionFailed):
    def __init__(self, requested, available):
        super().__init__(
            f"Cannot remove {requested} copies. "
            f"Only {available} available copies exist."
        )
        self.requested = requested
        self.available = available


class Forbidden(LibraryError):
    status_code = 403


class TransientError(LibraryError):
    status_code = 503
    retryable = True
