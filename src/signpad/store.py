"""Filesystem-backed object and record stores for signpad.

Everything lives on disk under ``~/.signpad/`` as PDF files and JSON rows.
The two stores play the roles of the object service (raw template PDFs)
and the relational service (templates and signed documents); the record
store also announces inserts on a ``ChangeFeed`` the way a database's
realtime channel would.

Directory layout::

    ~/.signpad/
    ├── files/              # Object store (template PDFs by path)
    ├── templates/          # Template rows (JSON)
    └── signed_documents/   # Signed document rows (JSON, write-once)
"""

import json
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote

from .config import DEFAULT_PUBLIC_BASE_URL, DEFAULT_SIGNPAD_DIR
from .events import ChangeEvent, ChangeFeed, ChangeKind
from .models import SignedDocument, Template

logger = logging.getLogger("signpad.store")

SIGNED_DOCUMENTS_TABLE = "signed_documents"


def _atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` all-or-nothing."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ObjectStore:
    """Stores raw file bytes by relative path.

    Args:
        base_dir: Root directory for the signpad data.
        public_base_url: Base URL that serves ``/files/<path>``.
    """

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        public_base_url: str = DEFAULT_PUBLIC_BASE_URL,
    ) -> None:
        self.base = (base_dir or DEFAULT_SIGNPAD_DIR) / "files"
        self.base.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path)
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Invalid object path: {path}")
        return self.base.joinpath(*rel.parts)

    def upload(self, path: str, data: bytes) -> str:
        """Store ``data`` under ``path``.

        Returns:
            The path, for convenience.
        """
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(target, data)
        logger.info("Stored object %s (%d bytes)", path, len(data))
        return path

    def download(self, path: str) -> bytes:
        """Read the bytes stored under ``path``.

        Raises:
            FileNotFoundError: If nothing is stored there.
        """
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"Object not found: {path}")
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except ValueError:
            return False

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/files/{quote(path)}"


class RecordStore:
    """JSON rows for templates and signed documents.

    Signed documents are insert-only. Each successful insert is published
    on ``feed`` as an ``insert`` event on the ``signed_documents`` table.

    Args:
        base_dir: Root directory for the signpad data.
        feed: Change feed to announce inserts on.
    """

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self.base = base_dir or DEFAULT_SIGNPAD_DIR
        self.feed = feed or ChangeFeed()
        self._templates_dir = self.base / "templates"
        self._signed_dir = self.base / SIGNED_DOCUMENTS_TABLE

        for d in (self._templates_dir, self._signed_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def save_template(self, template: Template) -> Path:
        """Save a template row.

        Args:
            template: Template to persist.

        Returns:
            Path to the saved JSON file.
        """
        path = self._templates_dir / f"{template.id}.json"
        _atomic_write(path, template.model_dump_json(indent=2, by_alias=True).encode("utf-8"))
        logger.info("Saved template %s (%s)", template.name, template.id[:8])
        return path

    def load_template(self, template_id: str) -> Template:
        """Load a template by ID.

        Raises:
            FileNotFoundError: If the template doesn't exist.
        """
        path = self._templates_dir / f"{template_id}.json"
        if not path.is_file():
            raise FileNotFoundError(f"Template not found: {template_id}")
        data = json.loads(path.read_text(encoding="utf-8"))
        return Template.model_validate(data)

    def list_templates(self) -> list[Template]:
        """List all templates, newest first."""
        templates = []
        for f in self._templates_dir.glob("*.json"):
            try:
                data = json.loads(f.read_text(encoding="utf-8"))
                templates.append(Template.model_validate(data))
            except Exception as exc:
                logger.warning("Skipping invalid template %s: %s", f.name, exc)
        templates.sort(key=lambda t: t.created_at, reverse=True)
        return templates

    # ------------------------------------------------------------------
    # Signed documents
    # ------------------------------------------------------------------

    def insert_signed_document(self, document: SignedDocument) -> SignedDocument:
        """Insert a signed document row and announce it.

        The write is atomic: either the full row exists afterwards or
        nothing does.

        Args:
            document: The row to insert.

        Returns:
            The inserted row.

        Raises:
            FileExistsError: If a row with the same id already exists.
            OSError: If the row could not be written.
        """
        path = self._signed_dir / f"{document.id}.json"
        if path.exists():
            raise FileExistsError(f"Signed document already exists: {document.id}")
        _atomic_write(path, document.model_dump_json(indent=2).encode("utf-8"))
        logger.info(
            "Inserted signed document %s for template %s",
            document.id[:8],
            document.template_id[:8],
        )

        self.feed.publish_nowait(
            ChangeEvent(
                table=SIGNED_DOCUMENTS_TABLE,
                kind=ChangeKind.INSERT,
                record=document.model_dump(mode="json"),
            )
        )
        return document

    def load_signed_document(self, document_id: str) -> SignedDocument:
        """Load a signed document by ID.

        Raises:
            FileNotFoundError: If the row doesn't exist.
        """
        path = self._signed_dir / f"{document_id}.json"
        if not path.is_file():
            raise FileNotFoundError(f"Signed document not found: {document_id}")
        return SignedDocument.model_validate_json(path.read_text(encoding="utf-8"))

    def list_signed_documents(self, template_id: Optional[str] = None) -> list[SignedDocument]:
        """List signed documents, optionally for one template, newest first."""
        documents = []
        for f in self._signed_dir.glob("*.json"):
            try:
                doc = SignedDocument.model_validate_json(f.read_text(encoding="utf-8"))
            except Exception as exc:
                logger.warning("Skipping invalid signed document %s: %s", f.name, exc)
                continue
            if template_id is None or doc.template_id == template_id:
                documents.append(doc)
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents
