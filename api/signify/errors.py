
class SignifyError(Exception):
    """Base for every error surfaced to API callers as {"error": kind, "detail": message}."""

    kind = "SignifyError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotFound(SignifyError):
    kind = "NotFound"
    status_code = 404


class Forbidden(SignifyError):
    kind = "Forbidden"
    status_code = 403


class InvalidState(SignifyError):
    kind = "InvalidState"
    status_code = 409


class Conflict(SignifyError):
    kind = "Conflict"
    status_code = 409


class Expired(SignifyError):
    kind = "Expired"
    status_code = 410


class ValidationError(SignifyError):
    kind = "ValidationError"
    status_code = 422


class NoRecipients(ValidationError):
    kind = "NoRecipients"


class UpstreamFailure(SignifyError):
    kind = "UpstreamFailure"
    status_code = 503
