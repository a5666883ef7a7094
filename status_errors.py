class StatusCheckError(RuntimeError):
    """Base class for failures raised while checking an application."""


class TransientScrapeError(StatusCheckError):
    """A form field never became interactable or the attempt ran out of time."""

    def __init__(self, message: str, *, stage: str = "") -> None:
        super().__init__(message)
        self.stage = stage


class CaptchaSolveError(StatusCheckError):
    """Raised when the solving service gave no usable answer within the retry bound."""


class DataError(StatusCheckError):
    """A stored or submitted application record could not be parsed."""


class TransportError(StatusCheckError):
    """Webhook, mail or registry I/O failed."""


class FatalConfigError(StatusCheckError):
    """A credential needed for this attempt is not configured."""
