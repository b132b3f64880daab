"""Error taxonomy for signpad.

Storage and transport failures are caught at the service boundary and
re-raised as one of these, so hosts only ever see ``SignpadError``
subclasses.
"""

from typing import Optional


class SignpadError(Exception):
    """Base class for every error the signing core raises."""


class LoadError(SignpadError):
    """A template or its source PDF could not be loaded. Retryable."""


class ValidationError(SignpadError):
    """Required fields are blank at submission time.

    Attributes:
        missing_labels: Labels of the offending fields, in template order.
    """

    def __init__(self, missing_labels: list[str]) -> None:
        self.missing_labels = list(missing_labels)
        super().__init__(
            "Please complete all required fields: " + ", ".join(self.missing_labels)
        )


class PersistError(SignpadError):
    """Inserting a signed document failed. Nothing was committed."""


class OverlayDecodeError(SignpadError):
    """A signature payload could not be decoded into an image.

    Attributes:
        field_id: The field whose payload is malformed (if known).
    """

    def __init__(self, message: str, field_id: Optional[str] = None) -> None:
        self.field_id = field_id
        super().__init__(message)


class RenderError(SignpadError):
    """The source PDF could not be parsed at flatten time."""


SourceLoadError = RenderError


class UnknownFieldError(SignpadError, KeyError):
    """A value was addressed to a field the template does not define."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class SessionClosedError(SignpadError):
    """The session was already submitted and can no longer change."""


class HandoffReferenceError(SignpadError, ValueError):
    """A URL is not a valid signature capture reference."""


class HandoffTimeoutError(SignpadError, TimeoutError):
    """No hand-off completion arrived before the deadline."""


class HandoffClosedError(SignpadError):
    """The hand-off listener was released before a completion arrived."""
