"""Tests for the signing service surface."""

import io

import pytest
from pypdf import PdfReader

from signpad.errors import (
    LoadError,
    PersistError,
    RenderError,
    SessionClosedError,
    ValidationError,
)
from signpad.flatten import OverlayStatus
from signpad.models import SessionStatus, SignedDocument

pytestmark = pytest.mark.anyio


async def _filled_session(service, agreement, signature):
    session = await service.load_session(agreement.id)
    service.set_field_value(session, "Name", "Jane Doe")
    service.set_field_value(session, "Sig", signature)
    return session


class TestLoad:

    async def test_load_session(self, service, agreement):
        session = await service.load_session(agreement.id)
        assert session.template == agreement
        assert session.status == SessionStatus.IN_PROGRESS
        assert session.pdf_url == "https://sign.example.test/files/templates/agreement.pdf"

    async def test_missing_template(self, service):
        with pytest.raises(LoadError):
            await service.load_session("does-not-exist")

    async def test_missing_pdf(self, service, agreement):
        orphan = agreement.model_copy(update={"id": "orphan", "file_path": "templates/gone.pdf"})
        service.records.save_template(orphan)
        with pytest.raises(LoadError):
            await service.load_session("orphan")


class TestSubmit:

    async def test_submit_persists_and_closes_session(self, service, agreement, signature):
        session = await _filled_session(service, agreement, signature)
        document = await service.submit(session)

        assert session.status == SessionStatus.SUBMITTED
        assert session.signed_document == document
        assert document.template_id == agreement.id
        assert document.handoff_token is None
        stored = service.records.load_signed_document(document.id)
        assert stored.form_values == document.form_values

    async def test_scenario_b_blank_signature(self, service, agreement):
        session = await service.load_session(agreement.id)
        service.set_field_value(session, "Name", "Jane Doe")

        with pytest.raises(ValidationError) as info:
            await service.submit(session)

        assert info.value.missing_labels == ["Sig"]
        assert "Sig" in str(info.value)
        assert session.status == SessionStatus.IN_PROGRESS
        assert service.records.list_signed_documents() == []

    async def test_persist_failure_keeps_session_open(self, service, agreement, signature, monkeypatch):
        def broken_insert(document):
            raise OSError("disk full")

        monkeypatch.setattr(service.records, "insert_signed_document", broken_insert)
        session = await _filled_session(service, agreement, signature)

        with pytest.raises(PersistError):
            await service.submit(session)

        assert session.status == SessionStatus.IN_PROGRESS
        assert session.signed_document is None

    async def test_retry_after_persist_failure(self, service, agreement, signature, monkeypatch):
        session = await _filled_session(service, agreement, signature)
        real_insert = service.records.insert_signed_document
        calls = []

        def flaky_insert(document):
            calls.append(document.id)
            if len(calls) == 1:
                raise OSError("transient")
            return real_insert(document)

        monkeypatch.setattr(service.records, "insert_signed_document", flaky_insert)
        with pytest.raises(PersistError):
            await service.submit(session)
        document = await service.submit(session)

        assert len(calls) == 2
        assert session.status == SessionStatus.SUBMITTED
        assert [d.id for d in service.records.list_signed_documents()] == [document.id]

    async def test_second_submit_refused(self, service, agreement, signature):
        session = await _filled_session(service, agreement, signature)
        await service.submit(session)
        with pytest.raises(SessionClosedError):
            await service.submit(session)
        assert len(service.records.list_signed_documents()) == 1

    async def test_advance_and_validate(self, service, agreement):
        session = await service.load_session(agreement.id)
        service.advance_field(session)
        assert session.active_field_index == 0
        service.set_field_value(session, "Name", "Jane Doe")
        service.advance_field(session)
        assert session.active_field_index == 1
        assert service.validate_for_submission(session).missing_labels == ["Sig"]


class TestFlatten:

    async def test_flatten_for_download(self, service, agreement, signature):
        document = await service.submit(await _filled_session(service, agreement, signature))
        pdf_bytes = await service.flatten_for_download(document)

        reader = PdfReader(io.BytesIO(pdf_bytes))
        assert len(reader.pages) == 2
        assert "Jane Doe" in reader.pages[0].extract_text()

    async def test_report_lists_undrawn_signature(self, service, agreement):
        document = SignedDocument(
            template_id=agreement.id,
            form_values={
                agreement.resolve_field("Name").id: "Jane Doe",
                agreement.resolve_field("Sig").id: "data:image/png;base64,AAAA",
            },
        )
        result = await service.flatten_with_report(document)
        assert [f.label for f in result.failures] == ["Sig"]
        assert result.result_for(agreement.resolve_field("Name").id).status == OverlayStatus.DRAWN

    async def test_missing_source_pdf(self, service, agreement):
        orphan = agreement.model_copy(update={"id": "orphan", "file_path": "templates/gone.pdf"})
        service.records.save_template(orphan)
        with pytest.raises(LoadError):
            await service.flatten_for_download(SignedDocument(template_id="orphan"))

    async def test_corrupt_source_pdf(self, service, agreement):
        service.objects.upload(agreement.file_path, b"garbage")
        with pytest.raises(RenderError):
            await service.flatten_for_download(SignedDocument(template_id=agreement.id))


class TestCaptureValidation:

    async def test_blank_signature_rejected(self, service, agreement):
        listener = service.begin_handoff(agreement.id)
        with pytest.raises(ValidationError) as info:
            await service.capture_handoff(listener.reference.url, "   ")
        listener.close()
        assert info.value.missing_labels == ["Sig"]
        assert service.records.list_signed_documents() == []

    async def test_unknown_template(self, service):
        listener = service.begin_handoff("no-such-template")
        with pytest.raises(LoadError):
            await service.capture_handoff(listener.reference.url, "data:image/png;base64,AAAA")
        listener.close()
