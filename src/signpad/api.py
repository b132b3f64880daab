"""signpad REST API: FastAPI server for filling and signing templates.

Submissions are validated and persisted, flattened copies are streamed
back as downloads, and signature capture can be handed off to a phone:
the desktop asks for a capture URL, shows it as a QR code, and long-polls
the wait endpoint while the phone posts its capture.
"""

import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import SignpadConfig
from .errors import (
    HandoffClosedError,
    HandoffReferenceError,
    HandoffTimeoutError,
    LoadError,
    PersistError,
    RenderError,
    UnknownFieldError,
    ValidationError,
)
from .flatten import signed_filename
from .models import SignedDocument, Template
from .service import SigningService

logger = logging.getLogger("signpad.api")

app = FastAPI(
    title="signpad",
    description="Fill, sign and flatten PDF templates, with phone hand-off.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[SigningService] = None


def get_service() -> SigningService:
    """Process-wide service, built from the environment on first use."""
    global _service
    if _service is None:
        _service = SigningService(SignpadConfig.from_env())
    return _service


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class SubmitRequest(BaseModel):
    """Values keyed by field id or label."""

    form_values: dict[str, str] = {}


class TemplateResponse(BaseModel):
    template: Template
    pdf_url: str


class HandoffResponse(BaseModel):
    template_id: str
    token: str
    url: str


class HandoffRequest(BaseModel):
    """The desktop's values so far, keyed by field id or label."""

    form_values: dict[str, str] = {}


class CaptureRequest(BaseModel):
    """A phone's capture: the scanned URL and the signature data URL."""

    url: str
    signature: str


@app.exception_handler(ValidationError)
async def _validation_error(request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "missing_labels": exc.missing_labels},
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@app.get("/api/templates", response_model=list[Template])
async def list_templates(service: SigningService = Depends(get_service)) -> list[Template]:
    return service.records.list_templates()


@app.get("/api/templates/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str, service: SigningService = Depends(get_service)
) -> TemplateResponse:
    """Load a template the way a signing page does."""
    try:
        session = await service.load_session(template_id)
    except LoadError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return TemplateResponse(template=session.template, pdf_url=session.pdf_url or "")


@app.get("/api/templates/{template_id}/pdf")
async def download_template_pdf(
    template_id: str, service: SigningService = Depends(get_service)
) -> Response:
    try:
        template = await service.load_template(template_id)
        pdf_data = await asyncio.to_thread(service.objects.download, template.file_path)
    except (LoadError, FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="Template PDF not found")
    return Response(content=pdf_data, media_type="application/pdf")


@app.get("/files/{path:path}")
async def get_file(path: str, service: SigningService = Depends(get_service)) -> Response:
    try:
        data = await asyncio.to_thread(service.objects.download, path)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="File not found")
    return Response(content=data, media_type="application/pdf")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

@app.post(
    "/api/templates/{template_id}/submit",
    response_model=SignedDocument,
    status_code=201,
)
async def submit_template(
    template_id: str,
    req: SubmitRequest,
    service: SigningService = Depends(get_service),
) -> SignedDocument:
    """Validate and persist a complete set of values."""
    try:
        session = await service.load_session(template_id)
    except LoadError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    try:
        for key, value in req.form_values.items():
            service.set_field_value(session, key, value)
    except UnknownFieldError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        return await service.submit(session)
    except PersistError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@app.get("/api/signed", response_model=list[SignedDocument])
async def list_signed(
    template_id: Optional[str] = Query(None, description="Filter by template"),
    service: SigningService = Depends(get_service),
) -> list[SignedDocument]:
    return service.records.list_signed_documents(template_id)


def _load_signed(service: SigningService, document_id: str) -> SignedDocument:
    try:
        return service.records.load_signed_document(document_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Signed document not found")


@app.get("/api/signed/{document_id}", response_model=SignedDocument)
async def get_signed(
    document_id: str, service: SigningService = Depends(get_service)
) -> SignedDocument:
    return _load_signed(service, document_id)


@app.get("/api/signed/{document_id}/pdf")
async def download_signed_pdf(
    document_id: str, service: SigningService = Depends(get_service)
) -> Response:
    """Flatten a signed document and return it as a download."""
    document = _load_signed(service, document_id)
    try:
        template = await service.load_template(document.template_id)
        pdf_data = await service.flatten_for_download(document)
    except LoadError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RenderError:
        raise HTTPException(status_code=422, detail="Cannot produce signed copy")

    filename = signed_filename(template.name, document.created_at)
    return Response(
        content=pdf_data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Hand-off
# ---------------------------------------------------------------------------

@app.post("/api/templates/{template_id}/handoff", response_model=HandoffResponse)
async def begin_handoff(
    template_id: str,
    req: Optional[HandoffRequest] = None,
    field_id: Optional[str] = Query(None, description="Signature field to capture"),
    service: SigningService = Depends(get_service),
) -> HandoffResponse:
    """Issue a capture URL and start listening for its completion.

    The phone's capture is validated against the values posted here.
    """
    try:
        await service.load_template(template_id)
    except LoadError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    values = req.form_values if req is not None else {}
    listener = service.begin_handoff(template_id, field_id, values)
    return HandoffResponse(
        template_id=template_id,
        token=listener.reference.token,
        url=listener.reference.url,
    )


@app.get(
    "/api/templates/{template_id}/handoff/{token}/wait",
    response_model=SignedDocument,
)
async def wait_handoff(
    template_id: str,
    token: str,
    timeout: float = Query(30.0, gt=0, le=600),
    service: SigningService = Depends(get_service),
) -> SignedDocument:
    """Long-poll until the phone completes the capture.

    A 408 leaves the listener open so the desktop can poll again, until
    the configured hand-off timeout expires it.
    """
    listener = service.handoffs.lookup(token)
    if listener is None or listener.reference.template_id != template_id:
        raise HTTPException(status_code=404, detail="Unknown hand-off")
    try:
        document = await listener.wait(timeout)
    except HandoffTimeoutError:
        raise HTTPException(status_code=408, detail="Hand-off not completed yet")
    except HandoffClosedError:
        raise HTTPException(status_code=410, detail="Hand-off was cancelled or expired")
    listener.close()
    return document


@app.delete("/api/templates/{template_id}/handoff/{token}", status_code=204)
async def cancel_handoff(
    template_id: str, token: str, service: SigningService = Depends(get_service)
) -> None:
    """Release a hand-off listener when the desktop leaves the page."""
    listener = service.handoffs.lookup(token)
    if listener is None or listener.reference.template_id != template_id:
        raise HTTPException(status_code=404, detail="Unknown hand-off")
    listener.close()


@app.post("/api/handoff/capture", response_model=SignedDocument, status_code=201)
async def capture_handoff(
    req: CaptureRequest, service: SigningService = Depends(get_service)
) -> SignedDocument:
    """Persist a signature captured on the phone."""
    try:
        return await service.capture_handoff(req.url, req.signature)
    except HandoffReferenceError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LoadError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PersistError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health() -> dict:
    """Health check."""
    return {
        "status": "ok",
        "service": "signpad",
        "version": "0.1.0",
    }
