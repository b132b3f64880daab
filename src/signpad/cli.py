"""signpad CLI: fill, sign and flatten PDF templates from the command line.

Usage:
    signpad templates
    signpad fields <template-id>
    signpad fill <template-id> --value "Name=Jane Doe" --signature "Sig=sig.png" --out signed.pdf
    signpad signed [--template <template-id>]
    signpad download <signed-id> [--out signed.pdf]
    signpad serve [--port 8400]
"""

import asyncio
import base64
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import SignpadConfig
from .errors import LoadError, PersistError, RenderError, UnknownFieldError, ValidationError
from .flatten import OverlayStatus, signed_filename
from .service import SigningService

console = Console()


def _split_assignment(raw: str) -> tuple[str, str]:
    if "=" not in raw:
        raise click.BadParameter(f"Expected LABEL=VALUE, got {raw!r}")
    key, value = raw.split("=", 1)
    return key.strip(), value


def _image_data_url(path: Path) -> str:
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="signpad data directory (default: $SIGNPAD_DATA_DIR or ~/.signpad)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str], verbose: bool) -> None:
    """signpad: fill and sign PDF templates."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    config = SignpadConfig.from_env()
    if data_dir:
        config = config.model_copy(update={"data_dir": Path(data_dir)})
    ctx.ensure_object(dict)
    ctx.obj["service"] = SigningService(config)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@main.command()
@click.pass_context
def templates(ctx: click.Context) -> None:
    """List all templates."""
    service: SigningService = ctx.obj["service"]
    tpls = service.records.list_templates()

    if not tpls:
        console.print("[dim]No templates found.[/]")
        return

    table = Table(title="signpad Templates")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Name", style="cyan")
    table.add_column("Fields", justify="right")
    table.add_column("Created")

    for t in tpls:
        table.add_row(
            t.id[:12],
            t.name,
            str(len(t.fields)),
            t.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command()
@click.argument("template_id")
@click.pass_context
def fields(ctx: click.Context, template_id: str) -> None:
    """Show a template's fields in signing order."""
    service: SigningService = ctx.obj["service"]
    try:
        template = asyncio.run(service.load_template(template_id))
    except LoadError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)

    table = Table(title=template.name)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Label", style="cyan")
    table.add_column("Type")
    table.add_column("Required", justify="center")
    table.add_column("Page", justify="right")
    table.add_column("Position")

    for i, f in enumerate(template.fields, start=1):
        table.add_row(
            str(i),
            f.label,
            f.field_type.value,
            "yes" if f.required else "",
            str(f.position.page_number),
            f"({f.position.x:g}, {f.position.y:g})",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Fill
# ---------------------------------------------------------------------------

@main.command()
@click.argument("template_id")
@click.option("--value", "values", multiple=True, help="LABEL=VALUE for a text or date field")
@click.option("--signature", "signatures", multiple=True, help="LABEL=IMAGE_FILE for a signature field")
@click.option("--out", "out_path", type=click.Path(), default=None, help="Write the flattened PDF here")
@click.pass_context
def fill(
    ctx: click.Context,
    template_id: str,
    values: tuple[str, ...],
    signatures: tuple[str, ...],
    out_path: Optional[str],
) -> None:
    """Fill a template, submit it, and optionally write the signed PDF."""
    service: SigningService = ctx.obj["service"]

    async def _run():
        session = await service.load_session(template_id)
        for raw in values:
            key, value = _split_assignment(raw)
            service.set_field_value(session, key, value)
        for raw in signatures:
            key, image_path = _split_assignment(raw)
            service.set_field_value(session, key, _image_data_url(Path(image_path)))
        document = await service.submit(session)
        result = await service.flatten_with_report(document) if out_path else None
        return session, document, result

    try:
        session, document, result = asyncio.run(_run())
    except (ValidationError, LoadError, PersistError, RenderError, UnknownFieldError) as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)
    except FileNotFoundError as exc:
        console.print(f"[red]Signature image not found: {exc.filename}[/]")
        sys.exit(1)

    lines = [
        "[bold green]Document signed![/]\n",
        f"  Template: {session.template.name}",
        f"  ID:       {document.id[:16]}...",
        f"  Fields:   {len(document.form_values)}/{len(session.template.fields)}",
    ]
    if result is not None:
        Path(out_path).write_bytes(result.pdf_bytes)
        lines.append(f"  Output:   {out_path}")
        for r in result.results:
            if r.status in (OverlayStatus.DECODE_FAILED, OverlayStatus.PAGE_OUT_OF_RANGE):
                lines.append(f"  [yellow]Skipped {r.label}: {r.error or r.status.value}[/]")

    console.print(Panel("\n".join(lines), title="signpad", border_style="green"))


# ---------------------------------------------------------------------------
# Signed documents
# ---------------------------------------------------------------------------

@main.command()
@click.option("--template", "template_id", default=None, help="Only this template's submissions")
@click.pass_context
def signed(ctx: click.Context, template_id: Optional[str]) -> None:
    """List signed documents."""
    service: SigningService = ctx.obj["service"]
    docs = service.records.list_signed_documents(template_id)

    if not docs:
        console.print("[dim]No signed documents found.[/]")
        return

    table = Table(title="Signed Documents")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Template", style="cyan", max_width=12)
    table.add_column("Values", justify="right")
    table.add_column("Source")
    table.add_column("Created")

    for d in docs:
        table.add_row(
            d.id[:12],
            d.template_id[:12],
            str(len(d.form_values)),
            "hand-off" if d.handoff_token else "direct",
            d.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command()
@click.argument("document_id")
@click.option("--out", "out_path", type=click.Path(), default=None, help="Output path")
@click.pass_context
def download(ctx: click.Context, document_id: str, out_path: Optional[str]) -> None:
    """Write the flattened PDF of a signed document."""
    service: SigningService = ctx.obj["service"]
    try:
        document = service.records.load_signed_document(document_id)
    except FileNotFoundError:
        console.print(f"[red]Signed document not found: {document_id}[/]")
        sys.exit(1)

    async def _run():
        template = await service.load_template(document.template_id)
        result = await service.flatten_with_report(document)
        return template, result

    try:
        template, result = asyncio.run(_run())
    except LoadError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)
    except RenderError as exc:
        console.print(f"[red]Cannot produce signed copy: {exc}[/]")
        sys.exit(1)

    target = Path(out_path or signed_filename(template.name, document.created_at))
    target.write_bytes(result.pdf_bytes)
    console.print(f"[green]Wrote[/] {target}")
    for failure in result.failures:
        console.print(f"[yellow]Signature for {failure.label} could not be drawn: {failure.error}[/]")


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the signpad API server."""
    import uvicorn

    from . import api

    api._service = ctx.obj["service"]
    console.print(
        f"[bold]signpad API[/] listening on [cyan]http://{host}:{port}[/]"
    )
    uvicorn.run(api.app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
