"""Signing service: the surface a host UI drives.

Ties the navigation engine, the flattening pipeline and the hand-off
protocol to the object and record stores. Storage failures are converted
here into ``LoadError`` / ``PersistError`` so no raw ``OSError`` or
``FileNotFoundError`` reaches the host. Nothing is retried automatically;
a retry is the host calling the operation again.

Blocking filesystem and PDF work runs in ``asyncio.to_thread`` so an
event loop driving a UI or an HTTP server stays responsive.
"""

import asyncio
import logging
from typing import Mapping, Optional

from .config import SignpadConfig
from .errors import (
    HandoffReferenceError,
    LoadError,
    PersistError,
    ValidationError,
)
from .events import ChangeFeed
from .flatten import FlattenResult, Flattener
from .handoff import HandoffCoordinator, HandoffListener, HandoffReference
from .models import FieldType, SignedDocument, SigningSession, Template, ValidationResult
from .navigation import FieldNavigator
from .store import ObjectStore, RecordStore

logger = logging.getLogger("signpad.service")


class SigningService:
    """Entry points for loading, filling, submitting and flattening.

    Args:
        config: Runtime configuration.
        objects: Object store holding template PDFs.
        records: Record store holding templates and signed documents.
    """

    def __init__(
        self,
        config: Optional[SignpadConfig] = None,
        objects: Optional[ObjectStore] = None,
        records: Optional[RecordStore] = None,
    ) -> None:
        self.config = config or SignpadConfig()
        self.objects = objects or ObjectStore(self.config.data_dir, self.config.public_base_url)
        self.records = records or RecordStore(self.config.data_dir, ChangeFeed())
        self.flattener = Flattener(self.config.overlay)
        self.handoffs = HandoffCoordinator(
            self.records.feed,
            self.records.load_signed_document,
            self.config.public_base_url,
            max_age=self.config.handoff_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_template(self, template_id: str) -> Template:
        """Load a template row.

        Raises:
            LoadError: If the template is missing or unreadable.
        """
        try:
            return await asyncio.to_thread(self.records.load_template, template_id)
        except FileNotFoundError as exc:
            raise LoadError(f"Template not found: {template_id}") from exc
        except Exception as exc:
            logger.error("Failed to load template %s: %s", template_id[:8], exc)
            raise LoadError(f"Failed to load template {template_id}") from exc

    async def load_session(self, template_id: str) -> SigningSession:
        """Start a signing session for a template.

        Raises:
            LoadError: If the template or its PDF is unavailable.
        """
        template = await self.load_template(template_id)
        if not await asyncio.to_thread(self.objects.exists, template.file_path):
            raise LoadError(f"Source PDF for template {template_id} is unavailable")
        session = SigningSession(
            template=template,
            pdf_url=self.objects.get_public_url(template.file_path),
        )
        logger.info("Loaded session for template %s (%s)", template.name, template.id[:8])
        return session

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    def set_field_value(self, session: SigningSession, key: str, value: str) -> SigningSession:
        FieldNavigator(session).set_value(key, value)
        return session

    def advance_field(self, session: SigningSession) -> SigningSession:
        FieldNavigator(session).advance()
        return session

    def validate_for_submission(self, session: SigningSession) -> ValidationResult:
        return FieldNavigator(session).validate()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def _insert(self, document: SignedDocument) -> SignedDocument:
        try:
            return await asyncio.to_thread(self.records.insert_signed_document, document)
        except Exception as exc:
            logger.error("Failed to save signed document for template %s: %s", document.template_id[:8], exc)
            raise PersistError("Failed to save the document. Please try again.") from exc

    async def submit(self, session: SigningSession) -> SignedDocument:
        """Validate and persist a session as a signed document.

        Returns:
            The persisted SignedDocument; the session is marked submitted.

        Raises:
            SessionClosedError: If the session was already submitted.
            ValidationError: If required fields are blank. Nothing is persisted.
            PersistError: If the insert fails. The session stays in progress.
        """
        navigator = FieldNavigator(session)
        navigator.ensure_open()
        result = navigator.validate()
        if not result.ok:
            raise ValidationError(result.missing_labels)

        document = await self._insert(
            SignedDocument(template_id=session.template_id, form_values=dict(session.form_values))
        )
        navigator.mark_submitted(document)
        return document

    # ------------------------------------------------------------------
    # Flattening
    # ------------------------------------------------------------------

    async def flatten_with_report(self, document: SignedDocument) -> FlattenResult:
        """Flatten a signed document, returning the per-field report too.

        Raises:
            LoadError: If the template or its PDF is unavailable.
            RenderError: If the source PDF cannot be parsed.
        """
        template = await self.load_template(document.template_id)
        try:
            pdf_bytes = await asyncio.to_thread(self.objects.download, template.file_path)
        except (OSError, ValueError) as exc:
            raise LoadError(f"Source PDF for template {template.id} is unavailable") from exc

        result = await asyncio.to_thread(
            self.flattener.flatten_with_report, pdf_bytes, template, document.form_values
        )
        for failure in result.failures:
            logger.warning(
                "Signed document %s: field %r not drawn (%s)",
                document.id[:8],
                failure.label,
                failure.error,
            )
        return result

    async def flatten_for_download(self, document: SignedDocument) -> bytes:
        """Produce the flattened PDF bytes of a signed document."""
        return (await self.flatten_with_report(document)).pdf_bytes

    # ------------------------------------------------------------------
    # Hand-off
    # ------------------------------------------------------------------

    def begin_handoff(
        self,
        template_id: str,
        field_id: Optional[str] = None,
        values: Optional[Mapping[str, str]] = None,
    ) -> HandoffListener:
        """Issue a capture reference and start listening for its completion.

        The returned listener owns a live subscription. Pass it to
        ``await_handoff_completion`` or close it when leaving the page.
        Listeners left open past the configured hand-off timeout are
        closed on the next hand-off call.

        Args:
            template_id: Template being signed.
            field_id: Signature field to capture, None for the first one.
            values: The primary session's current values (field id or
                label keys). The capture is validated against them.
        """
        return self.handoffs.begin(template_id, field_id, values)

    async def await_handoff_completion(
        self,
        session: SigningSession,
        listener: HandoffListener,
        timeout: Optional[float] = None,
    ) -> SignedDocument:
        """Wait for the secondary device and apply its result to ``session``.

        Args:
            session: The primary device's session.
            listener: Listener from ``begin_handoff``; closed on return.
            timeout: Seconds to wait; defaults to the configured timeout.

        Returns:
            The signed document the secondary device persisted.

        Raises:
            HandoffTimeoutError: If nothing arrives in time.
        """
        if timeout is None:
            timeout = self.config.handoff_timeout_seconds
        try:
            document = await listener.wait(timeout)
        finally:
            listener.close()

        navigator = FieldNavigator(session)
        navigator.merge_values(document.form_values)
        navigator.mark_submitted(document)
        return document

    async def capture_handoff(self, url: str, signature: str) -> SignedDocument:
        """Secondary device: persist a signature captured for a reference.

        Completes the values the primary handed over with the signature
        and runs them through the same validation and insert a primary
        submission does, tagged with the reference's token. Does not
        know whether anyone is listening.

        Raises:
            HandoffReferenceError: If the URL is not a capture reference or
                names no usable signature field.
            LoadError: If the template cannot be loaded.
            ValidationError: If the signature or any other required field
                is blank. Nothing is persisted.
            PersistError: If the insert fails.
        """
        reference = HandoffReference.parse(url)
        template = await self.load_template(reference.template_id)

        if reference.field_id:
            field = template.field_by_id(reference.field_id)
        else:
            field = next(iter(template.signature_fields), None)
        if field is None or field.field_type != FieldType.SIGNATURE:
            raise HandoffReferenceError(
                f"Template {template.id[:8]} has no signature field to capture"
            )
        if not signature or not signature.strip():
            raise ValidationError([field.label])

        session = SigningSession(template=template)
        navigator = FieldNavigator(session)
        navigator.merge_values(self.handoffs.draft_values(reference.token))
        navigator.set_value(field.id, signature)
        result = navigator.validate()
        if not result.ok:
            raise ValidationError(result.missing_labels)

        document = await self._insert(
            SignedDocument(
                template_id=template.id,
                form_values=dict(session.form_values),
                handoff_token=reference.token,
            )
        )
        logger.info("Captured hand-off signature for template %s", template.id[:8])
        return document

    def cancel_handoff(self, url: str) -> None:
        """Secondary device gave up. Nothing is persisted."""
        reference = HandoffReference.parse(url)
        logger.info("Hand-off capture for template %s cancelled", reference.template_id[:8])
