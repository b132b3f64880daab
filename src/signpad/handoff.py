"""Cross-device signature hand-off.

A primary device (desktop) delegates signature capture to a secondary
device (phone) through a URL rendered as a scannable code::

    {base}/sign/{template_id}/complete?mode=sign&handoff={token}&field={field_id}

The primary hands over the values it has collected so far together with
the reference. The secondary device completes them with its capture and
persists the result with the same validated insert a normal submission
uses, carrying the token. It never talks to the primary. The primary
holds a standing subscription to signed-document inserts for the
template and treats the first insert carrying its token as the
completion.

Completion policy: first wins. Inserts for the same template without the
listener's token belong to someone else and are ignored. Inserts that
carry the token after the first one (a duplicate scan) are recorded as
conflicts and never applied.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from .errors import HandoffClosedError, HandoffReferenceError, HandoffTimeoutError
from .events import ChangeEvent, ChangeFeed, ChangeKind, Subscription
from .models import SignedDocument
from .store import SIGNED_DOCUMENTS_TABLE

logger = logging.getLogger("signpad.handoff")

CAPTURE_MODE = "sign"


# ---------------------------------------------------------------------------
# Reference
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HandoffReference:
    """Everything a secondary device needs to complete a capture.

    Attributes:
        template_id: Template being signed.
        token: Session-scoped correlation token (not a secret).
        field_id: Signature field to capture, None for the first one.
        url: The full capture URL.
    """

    template_id: str
    token: str
    field_id: Optional[str]
    url: str

    @classmethod
    def build(
        cls,
        base_url: str,
        template_id: str,
        token: Optional[str] = None,
        field_id: Optional[str] = None,
    ) -> "HandoffReference":
        token = token or secrets.token_urlsafe(16)
        query = {"mode": CAPTURE_MODE, "handoff": token}
        if field_id:
            query["field"] = field_id
        path_id = quote(template_id, safe="")
        url = f"{base_url.rstrip('/')}/sign/{path_id}/complete?{urlencode(query)}"
        return cls(template_id=template_id, token=token, field_id=field_id, url=url)

    @classmethod
    def parse(cls, url: str) -> "HandoffReference":
        """Recover a reference from a capture URL.

        Raises:
            HandoffReferenceError: If the URL is not a capture reference.
        """
        parts = urlsplit(url)
        segments = [s for s in parts.path.split("/") if s]
        if len(segments) < 3 or segments[-3] != "sign" or segments[-1] != "complete":
            raise HandoffReferenceError(f"Not a capture URL: {url}")

        query = parse_qs(parts.query)
        if query.get("mode", [None])[0] != CAPTURE_MODE:
            raise HandoffReferenceError(f"Capture URL is missing mode={CAPTURE_MODE}: {url}")
        token = query.get("handoff", [None])[0]
        if not token:
            raise HandoffReferenceError(f"Capture URL has no hand-off token: {url}")

        return cls(
            template_id=unquote(segments[-2]),
            token=token,
            field_id=query.get("field", [None])[0],
            url=url,
        )


# ---------------------------------------------------------------------------
# Primary-side listener
# ---------------------------------------------------------------------------


class HandoffListener:
    """The primary device's standing subscription for one hand-off.

    An explicitly owned resource: open it with ``HandoffCoordinator.begin``
    and release it with ``close()`` (or ``async with``) when the signing
    page goes away.

    Args:
        reference: The reference handed to the secondary device.
        subscription: Subscription filtered to the template's inserts.
        fetch: Re-reads a signed document row by id.
        values: The primary device's values at hand-off time. The
            secondary device submits them together with its capture.
        opened_at: Clock reading when the hand-off began.
        on_close: Called once when the listener is released.
    """

    def __init__(
        self,
        reference: HandoffReference,
        subscription: Subscription,
        fetch: Callable[[str], SignedDocument],
        values: Optional[Mapping[str, str]] = None,
        opened_at: float = 0.0,
        on_close: Optional[Callable[["HandoffListener"], None]] = None,
    ) -> None:
        self.reference = reference
        self._subscription = subscription
        self._fetch = fetch
        self.values: dict[str, str] = dict(values or {})
        self.opened_at = opened_at
        self._on_close = on_close
        self.completion: Optional[SignedDocument] = None
        self.conflicts: list[SignedDocument] = []

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    def _accept(self, event: ChangeEvent) -> Optional[SignedDocument]:
        record = event.record
        if record.get("handoff_token") != self.reference.token:
            logger.info(
                "Ignoring signed document %s for template %s: not from this hand-off",
                str(record.get("id", "?"))[:8],
                self.reference.template_id[:8],
            )
            return None

        document = self._fetch(record["id"])
        if self.completion is None:
            self.completion = document
            logger.info(
                "Hand-off for template %s completed by %s",
                self.reference.template_id[:8],
                document.id[:8],
            )
            return document

        self.conflicts.append(document)
        logger.warning(
            "Duplicate hand-off completion %s for template %s (already completed by %s)",
            document.id[:8],
            self.reference.template_id[:8],
            self.completion.id[:8],
        )
        return None

    async def wait(self, timeout: Optional[float] = None) -> SignedDocument:
        """Wait for the first completion carrying this listener's token.

        Args:
            timeout: Seconds to wait overall; None waits forever.

        Returns:
            The completing signed document, re-fetched from the store.

        Raises:
            HandoffTimeoutError: If no completion arrives in time.
            HandoffClosedError: If the listener was closed first.
        """
        if self.completion is not None:
            return self.completion

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
            try:
                event = await self._subscription.next_event(remaining)
            except asyncio.TimeoutError as exc:
                raise HandoffTimeoutError(
                    f"No hand-off completion for template {self.reference.template_id[:8]} "
                    f"within {timeout}s"
                ) from exc
            if event is None:
                raise HandoffClosedError(
                    f"Hand-off listener for template {self.reference.template_id[:8]} was closed"
                )
            document = await asyncio.to_thread(self._accept, event)
            if document is not None:
                return document

    def drain_conflicts(self) -> list[SignedDocument]:
        """Process events already queued after completion and return conflicts."""
        while True:
            event = self._subscription.poll()
            if event is None:
                break
            self._accept(event)
        return list(self.conflicts)

    def close(self) -> None:
        if self._subscription.closed:
            return
        self._subscription.close()
        if self._on_close is not None:
            self._on_close(self)
        logger.debug("Closed hand-off listener for template %s", self.reference.template_id[:8])

    async def __aenter__(self) -> "HandoffListener":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class HandoffCoordinator:
    """Creates hand-off references and tracks their open listeners.

    A listener left open longer than ``max_age`` seconds is closed the
    next time ``expire()`` runs, which ``begin`` and ``lookup`` do first.

    Args:
        feed: Change feed the record store publishes inserts on.
        fetch: Re-reads a signed document row by id.
        public_base_url: Base URL for capture references.
        max_age: Seconds a listener may stay open; None keeps it forever.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        fetch: Callable[[str], SignedDocument],
        public_base_url: str,
        max_age: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.feed = feed
        self._fetch = fetch
        self.public_base_url = public_base_url
        self.max_age = max_age
        self._clock = clock
        self._open: dict[str, HandoffListener] = {}

    @property
    def open_count(self) -> int:
        return len(self._open)

    def begin(
        self,
        template_id: str,
        field_id: Optional[str] = None,
        values: Optional[Mapping[str, str]] = None,
    ) -> HandoffListener:
        """Issue a capture reference and start listening for its completion.

        The subscription opens before the reference is returned, so a
        completion can never slip in between.

        Args:
            template_id: Template being signed.
            field_id: Signature field to capture, None for the first one.
            values: The primary device's current values, completed by the
                secondary device's capture.
        """
        self.expire()
        reference = HandoffReference.build(self.public_base_url, template_id, field_id=field_id)
        subscription = self.feed.subscribe(
            SIGNED_DOCUMENTS_TABLE,
            ChangeKind.INSERT,
            predicate=lambda e: e.record.get("template_id") == template_id,
        )
        listener = HandoffListener(
            reference,
            subscription,
            self._fetch,
            values=values,
            opened_at=self._clock(),
            on_close=self._forget,
        )
        self._open[reference.token] = listener
        logger.info("Started hand-off for template %s", template_id[:8])
        return listener

    def lookup(self, token: str) -> Optional[HandoffListener]:
        """The open listener for ``token``, None if closed or expired."""
        self.expire()
        return self._open.get(token)

    def draft_values(self, token: str) -> dict[str, str]:
        """Values the primary device handed over with ``token``."""
        listener = self.lookup(token)
        return dict(listener.values) if listener is not None else {}

    def expire(self) -> int:
        """Close listeners older than ``max_age``.

        Returns:
            Number of listeners closed.
        """
        if self.max_age is None:
            return 0
        cutoff = self._clock() - self.max_age
        stale = [lst for lst in self._open.values() if lst.opened_at <= cutoff]
        for listener in stale:
            logger.info(
                "Hand-off for template %s expired after %gs",
                listener.reference.template_id[:8],
                self.max_age,
            )
            listener.close()
        return len(stale)

    def close_all(self) -> None:
        for listener in list(self._open.values()):
            listener.close()

    def _forget(self, listener: HandoffListener) -> None:
        self._open.pop(listener.reference.token, None)
