"""Core data models for signpad.

A template is a stored PDF plus an ordered list of fields placed at
absolute positions. Signing a template produces a session (ephemeral,
client-side) and, on submission, a persisted signed document.

Field positions use a top-left origin in the same units as the PDF page
(points at the template's reference scale), matching on-screen layout.
The overlay engine converts them to PDF's bottom-left origin when
flattening.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from .errors import UnknownFieldError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FieldType(str, Enum):
    """Kinds of values a template field accepts."""

    SIGNATURE = "signature"
    TEXT = "text"
    DATE = "date"


class SessionStatus(str, Enum):
    """Lifecycle states for a signing session."""

    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


# ---------------------------------------------------------------------------
# Fields and templates
# ---------------------------------------------------------------------------

class FieldPosition(BaseModel):
    """Where a field sits on its page.

    Attributes:
        x: Distance from the left edge.
        y: Distance from the top edge (y grows downward).
        page_number: 1-indexed page number.
    """

    x: float = 0.0
    y: float = 0.0
    page_number: int = Field(1, ge=1, alias="pageNumber")

    model_config = {"populate_by_name": True, "frozen": True}


class TemplateField(BaseModel):
    """A single fillable location on a template.

    Attributes:
        id: Stable unique identifier. Values are keyed by this.
        field_type: What the field accepts.
        label: Display text, unique within the template.
        required: Whether the field must be filled before submission.
        position: Absolute placement on the page.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    field_type: FieldType = Field(FieldType.TEXT, alias="type")
    label: str
    required: bool = True
    position: FieldPosition = Field(default_factory=FieldPosition)

    model_config = {"populate_by_name": True, "frozen": True}


class Template(BaseModel):
    """Reusable document definition: a stored PDF and its fields.

    Attributes:
        id: Unique identifier.
        name: Display name (e.g. "Rental Agreement").
        fields: Fields in navigation order.
        file_path: Object store path of the source PDF.
        created_at: When the template was published.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    fields: list[TemplateField] = Field(default_factory=list)
    file_path: str
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @model_validator(mode="after")
    def _check_unique_fields(self) -> "Template":
        ids = [f.id for f in self.fields]
        if len(set(ids)) != len(ids):
            raise ValueError("Field ids must be unique within a template")
        labels = [f.label for f in self.fields]
        if len(set(labels)) != len(labels):
            raise ValueError("Field labels must be unique within a template")
        return self

    def field_by_id(self, field_id: str) -> Optional[TemplateField]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None

    def field_by_label(self, label: str) -> Optional[TemplateField]:
        for f in self.fields:
            if f.label == label:
                return f
        return None

    def resolve_field(self, key: str) -> TemplateField:
        """Find a field by id, falling back to its label.

        Args:
            key: Field id or label.

        Returns:
            The matching field.

        Raises:
            UnknownFieldError: If neither an id nor a label matches.
        """
        found = self.field_by_id(key) or self.field_by_label(key)
        if found is None:
            raise UnknownFieldError(f"Template {self.id[:8]} has no field {key!r}")
        return found

    @property
    def signature_fields(self) -> list[TemplateField]:
        return [f for f in self.fields if f.field_type == FieldType.SIGNATURE]


# ---------------------------------------------------------------------------
# Persisted submission
# ---------------------------------------------------------------------------

class SignedDocument(BaseModel):
    """One completed submission against a template. Immutable.

    Attributes:
        id: Unique identifier.
        template_id: Template this submission fills.
        form_values: Field id -> value. Signature values are image payloads.
        created_at: Insert time.
        handoff_token: Correlation token when captured on a second device.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    template_id: str
    form_values: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    handoff_token: Optional[str] = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Outcome of a completeness check."""

    ok: bool
    missing_labels: list[str] = Field(default_factory=list)


class SigningSession(BaseModel):
    """Ephemeral state of one person filling one template.

    Mutated only through ``FieldNavigator`` and the hand-off protocol.

    Attributes:
        template: The template being filled.
        form_values: Field id -> current value.
        active_field_index: Index into ``template.fields``.
        status: ``in_progress`` until a submission is persisted.
        signed_document: The persisted record once submitted.
        pdf_url: Public URL of the source PDF for display.
    """

    template: Template
    form_values: dict[str, str] = Field(default_factory=dict)
    active_field_index: int = 0
    status: SessionStatus = SessionStatus.IN_PROGRESS
    signed_document: Optional[SignedDocument] = None
    pdf_url: Optional[str] = None

    @property
    def template_id(self) -> str:
        return self.template.id

    @property
    def is_submitted(self) -> bool:
        return self.status == SessionStatus.SUBMITTED

    def value_for(self, key: str) -> str:
        """Current value of a field (by id or label), '' when unset."""
        return self.form_values.get(self.template.resolve_field(key).id, "")
