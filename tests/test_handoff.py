"""Tests for cross-device signature hand-off."""

import io

import pytest
from pypdf import PdfReader

from signpad.errors import (
    HandoffClosedError,
    HandoffReferenceError,
    HandoffTimeoutError,
    ValidationError,
)
from signpad.events import ChangeFeed
from signpad.handoff import CAPTURE_MODE, HandoffCoordinator, HandoffReference
from signpad.models import SessionStatus, SignedDocument
from signpad.store import RecordStore

pytestmark = pytest.mark.anyio

BASE = "https://sign.example.test"


class TestReference:
    """Capture URLs carry template, token and optional field."""

    def test_build(self):
        ref = HandoffReference.build(BASE + "/", "tpl-1", token="tok123", field_id="f9")
        assert ref.url == f"{BASE}/sign/tpl-1/complete?mode={CAPTURE_MODE}&handoff=tok123&field=f9"

    def test_build_generates_distinct_tokens(self):
        a = HandoffReference.build(BASE, "tpl-1")
        b = HandoffReference.build(BASE, "tpl-1")
        assert a.token and b.token
        assert a.token != b.token
        assert a.field_id is None
        assert "field=" not in a.url

    def test_parse_roundtrip(self):
        ref = HandoffReference.build(BASE, "tpl-1", field_id="f9")
        parsed = HandoffReference.parse(ref.url)
        assert parsed == ref

    def test_template_id_needing_quotes(self):
        ref = HandoffReference.build(BASE, "lease 2025/ä", token="tok")
        assert "/sign/lease%202025%2F%C3%A4/complete" in ref.url
        assert HandoffReference.parse(ref.url).template_id == "lease 2025/ä"

    @pytest.mark.parametrize(
        "url",
        [
            f"{BASE}/templates/tpl-1",
            f"{BASE}/sign/tpl-1/complete?handoff=tok",
            f"{BASE}/sign/tpl-1/complete?mode=view&handoff=tok",
            f"{BASE}/sign/tpl-1/complete?mode=sign",
            "not a url",
        ],
    )
    def test_parse_rejects(self, url):
        with pytest.raises(HandoffReferenceError):
            HandoffReference.parse(url)


class FakeClock:

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def _desktop_session(service, agreement):
    session = await service.load_session(agreement.id)
    service.set_field_value(session, "Name", "Jane Doe")
    return session


class TestListener:

    async def test_scenario_c_completion_is_applied(self, service, agreement, signature):
        session = await _desktop_session(service, agreement)
        listener = service.begin_handoff(agreement.id, values=session.form_values)

        captured = await service.capture_handoff(listener.reference.url, signature)
        document = await service.await_handoff_completion(session, listener, timeout=1)

        assert document.id == captured.id
        assert document.handoff_token == listener.reference.token
        assert session.status == SessionStatus.SUBMITTED
        assert session.signed_document == document
        assert session.value_for("Sig") == signature
        assert session.value_for("Name") == "Jane Doe"
        assert listener.closed

    async def test_submitted_document_carries_desktop_values(self, service, agreement, signature):
        session = await _desktop_session(service, agreement)
        listener = service.begin_handoff(agreement.id, values=session.form_values)
        await service.capture_handoff(listener.reference.url, signature)
        await service.await_handoff_completion(session, listener, timeout=1)

        assert session.signed_document.form_values == session.form_values
        pdf_bytes = await service.flatten_for_download(session.signed_document)
        page = PdfReader(io.BytesIO(pdf_bytes)).pages[0]
        assert "Jane Doe" in page.extract_text()

    async def test_duplicate_completion_is_a_conflict(self, service, agreement, signature):
        listener = service.begin_handoff(agreement.id, values={"Name": "Jane Doe"})
        first = await service.capture_handoff(listener.reference.url, signature)
        second = await service.capture_handoff(listener.reference.url, signature)

        completed = await listener.wait(timeout=1)
        conflicts = listener.drain_conflicts()
        listener.close()

        assert completed.id == first.id
        assert [d.id for d in conflicts] == [second.id]

    async def test_foreign_inserts_are_ignored(self, service, agreement, signature):
        listener = service.begin_handoff(agreement.id, values={"Name": "Jane Doe"})

        # Another signer on the same template, and a parallel hand-off.
        other = await service.load_session(agreement.id)
        service.set_field_value(other, "Name", "Someone Else")
        service.set_field_value(other, "Sig", signature)
        await service.submit(other)
        parallel = service.begin_handoff(agreement.id, values={"Name": "Someone Else"})
        await service.capture_handoff(parallel.reference.url, signature)
        parallel.close()

        with pytest.raises(HandoffTimeoutError):
            await listener.wait(timeout=0.2)
        assert listener.completion is None
        assert listener.conflicts == []
        listener.close()

    async def test_timeout_leaves_session_untouched(self, service, agreement):
        session = await service.load_session(agreement.id)
        listener = service.begin_handoff(agreement.id)
        with pytest.raises(HandoffTimeoutError):
            await service.await_handoff_completion(session, listener, timeout=0.05)
        assert session.status == SessionStatus.IN_PROGRESS
        assert listener.closed

    async def test_closed_listener(self, service, agreement):
        listener = service.begin_handoff(agreement.id)
        listener.close()
        with pytest.raises(HandoffClosedError):
            await listener.wait(timeout=1)

    async def test_context_manager_releases_subscription(self, service, agreement):
        feed = service.records.feed
        async with service.begin_handoff(agreement.id) as listener:
            assert feed.subscriber_count == 1
            assert service.handoffs.open_count == 1
        assert listener.closed
        assert feed.subscriber_count == 0
        assert service.handoffs.open_count == 0

    async def test_other_templates_never_reach_listener(self, tmp_path):
        feed = ChangeFeed()
        docs: dict[str, SignedDocument] = {}
        coordinator = HandoffCoordinator(feed, docs.__getitem__, BASE)
        listener = coordinator.begin("tpl-1")

        records = RecordStore(tmp_path, feed)
        doc = SignedDocument(template_id="tpl-2", handoff_token=listener.reference.token)
        records.insert_signed_document(doc)

        assert listener._subscription.poll() is None
        listener.close()


class TestExpiry:
    """Abandoned listeners are closed once the hand-off timeout passes."""

    async def test_expired_listeners_release_subscriptions(self):
        feed = ChangeFeed()
        clock = FakeClock()
        coordinator = HandoffCoordinator(feed, {}.__getitem__, BASE, max_age=2.0, clock=clock)

        abandoned = [coordinator.begin("tpl-1") for _ in range(50)]
        assert coordinator.open_count == 50
        assert feed.subscriber_count == 50

        clock.now += 2.5
        fresh = coordinator.begin("tpl-1")

        assert all(listener.closed for listener in abandoned)
        assert coordinator.open_count == 1
        assert feed.subscriber_count == 1
        assert coordinator.lookup(fresh.reference.token) is fresh
        fresh.close()

    async def test_lookup_expires(self):
        clock = FakeClock()
        coordinator = HandoffCoordinator(ChangeFeed(), {}.__getitem__, BASE, max_age=2.0, clock=clock)
        listener = coordinator.begin("tpl-1")

        clock.now += 1.0
        assert coordinator.lookup(listener.reference.token) is listener
        clock.now += 1.5
        assert coordinator.lookup(listener.reference.token) is None
        with pytest.raises(HandoffClosedError):
            await listener.wait(timeout=1)

    async def test_no_max_age_keeps_listeners(self):
        clock = FakeClock()
        coordinator = HandoffCoordinator(ChangeFeed(), {}.__getitem__, BASE, clock=clock)
        listener = coordinator.begin("tpl-1")
        clock.now += 10_000
        assert coordinator.expire() == 0
        assert not listener.closed
        listener.close()

    async def test_service_uses_configured_timeout(self, service):
        assert service.handoffs.max_age == service.config.handoff_timeout_seconds


class TestCapture:

    async def test_capture_completes_handed_over_values(self, service, agreement, signature):
        sig = agreement.resolve_field("Sig")
        name = agreement.resolve_field("Name")
        listener = service.begin_handoff(agreement.id, field_id=sig.id, values={"Name": "Jane Doe"})
        document = await service.capture_handoff(listener.reference.url, signature)
        listener.close()
        assert document.form_values == {name.id: "Jane Doe", sig.id: signature}

    async def test_capture_without_required_values_is_rejected(self, service, agreement, signature):
        listener = service.begin_handoff(agreement.id)
        with pytest.raises(ValidationError) as info:
            await service.capture_handoff(listener.reference.url, signature)
        listener.close()
        assert info.value.missing_labels == ["Name"]
        assert service.records.list_signed_documents() == []

    async def test_capture_for_closed_handoff_is_rejected(self, service, agreement, signature):
        listener = service.begin_handoff(agreement.id, values={"Name": "Jane Doe"})
        listener.close()
        with pytest.raises(ValidationError):
            await service.capture_handoff(listener.reference.url, signature)
        assert service.records.list_signed_documents() == []

    async def test_capture_rejects_text_field(self, service, agreement, signature):
        name = agreement.resolve_field("Name")
        ref = HandoffReference.build(BASE, agreement.id, field_id=name.id)
        with pytest.raises(HandoffReferenceError):
            await service.capture_handoff(ref.url, signature)

    async def test_cancel_persists_nothing(self, service, agreement):
        ref = HandoffReference.build(BASE, agreement.id)
        service.cancel_handoff(ref.url)
        assert service.records.list_signed_documents(agreement.id) == []
