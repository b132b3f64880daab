"""Field navigation state machine.

Drives which field is active and when a session may be submitted::

    editing(0) -> editing(1) -> ... -> ready_to_submit -> submitted

Fields are visited strictly in template order. ``advance()`` refuses to
leave a required field that is still blank, and nothing may change once
the session is submitted.
"""

import logging
from enum import Enum
from typing import Mapping, Optional

from .errors import SessionClosedError
from .models import (
    SessionStatus,
    SignedDocument,
    SigningSession,
    TemplateField,
    ValidationResult,
)

logger = logging.getLogger("signpad.navigation")


class NavigationState(str, Enum):
    """Derived position of a session in the signing flow."""

    EDITING = "editing"
    READY_TO_SUBMIT = "ready_to_submit"
    SUBMITTED = "submitted"


def _is_blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def validate_values(session: SigningSession) -> ValidationResult:
    """Collect labels of required fields that are missing or blank."""
    missing = [
        f.label
        for f in session.template.fields
        if f.required and _is_blank(session.form_values.get(f.id))
    ]
    return ValidationResult(ok=not missing, missing_labels=missing)


class FieldNavigator:
    """Steps a ``SigningSession`` through its template's fields.

    The navigator holds no state of its own; everything lives on the
    session so it can be handed between the service and the hand-off
    listener.
    """

    def __init__(self, session: SigningSession) -> None:
        self.session = session

    @property
    def fields(self) -> list[TemplateField]:
        return self.session.template.fields

    @property
    def active_field(self) -> Optional[TemplateField]:
        """The field currently being filled, None for an empty template."""
        if not self.fields:
            return None
        return self.fields[self.session.active_field_index]

    @property
    def is_last_field(self) -> bool:
        return self.session.active_field_index >= len(self.fields) - 1

    @property
    def state(self) -> NavigationState:
        if self.session.is_submitted:
            return NavigationState.SUBMITTED
        if self.is_last_field and self.validate().ok:
            return NavigationState.READY_TO_SUBMIT
        return NavigationState.EDITING

    @property
    def can_advance(self) -> bool:
        if self.session.is_submitted or self.is_last_field:
            return False
        current = self.active_field
        if current.required and _is_blank(self.session.form_values.get(current.id)):
            return False
        return True

    def advance(self) -> bool:
        """Move to the next field in template order.

        Returns:
            True if the active field changed, False if the move was refused
            (last field, blank required field, or submitted session).
        """
        if not self.can_advance:
            return False
        self.session.active_field_index += 1
        logger.debug(
            "Session on template %s advanced to field %d (%s)",
            self.session.template_id[:8],
            self.session.active_field_index,
            self.active_field.label,
        )
        return True

    def set_value(self, key: str, value: str) -> TemplateField:
        """Set (or overwrite) the value of a field.

        Args:
            key: Field id or label.
            value: Literal text, date string, or signature image payload.

        Returns:
            The field that was updated.

        Raises:
            SessionClosedError: If the session was already submitted.
            UnknownFieldError: If the template has no such field.
        """
        self.ensure_open()
        field = self.session.template.resolve_field(key)
        self.session.form_values[field.id] = value
        return field

    def validate(self) -> ValidationResult:
        return validate_values(self.session)

    def merge_values(self, values: Mapping[str, str]) -> None:
        """Merge values captured elsewhere (e.g. on a second device).

        Keys may be field ids or labels. Keys the template does not know
        are dropped.
        """
        self.ensure_open()
        template = self.session.template
        for key, value in values.items():
            field = template.field_by_id(key) or template.field_by_label(key)
            if field is None:
                logger.warning(
                    "Dropping value for unknown field %r on template %s",
                    key,
                    template.id[:8],
                )
                continue
            self.session.form_values[field.id] = value

    def mark_submitted(self, document: SignedDocument) -> None:
        """Enter the terminal state after a successful persistence call."""
        self.ensure_open()
        self.session.status = SessionStatus.SUBMITTED
        self.session.signed_document = document
        logger.info(
            "Session on template %s submitted as %s",
            self.session.template_id[:8],
            document.id[:8],
        )

    def ensure_open(self) -> None:
        if self.session.is_submitted:
            raise SessionClosedError(
                f"Session on template {self.session.template_id[:8]} is already submitted"
            )
