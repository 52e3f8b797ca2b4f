"""cap-mcp CLI with Rich output.

Usage:
    cap-mcp inspect --model gen/csn.json     # List parsed @mcp annotations
    cap-mcp serve --model gen/csn.json       # Serve /mcp backed by SQLite
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cap_mcp.errors import AnnotationError

app = typer.Typer(
    name="cap-mcp",
    help="cap-mcp - Expose annotated CDS services over the Model Context Protocol",
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()


def print_banner():
    """Print cap-mcp banner."""
    banner = Text()
    banner.append("cap", style="bold cyan")
    banner.append("-mcp", style="cyan")
    console.print(Panel(banner, border_style="cyan", box=box.ROUNDED))


def _load(model_path: Path):
    from cap_mcp.annotations import parse_definitions
    from cap_mcp.model import load_model

    try:
        model = load_model(model_path)
        return model, parse_definitions(model)
    except (OSError, ValueError) as e:
        # AnnotationError is a ValueError
        label = "Invalid annotation" if isinstance(e, AnnotationError) else "Cannot load model"
        console.print(f"[red]{label}:[/red] {e}")
        raise typer.Exit(1)


def _parse_user(spec: str):
    from cap_mcp.auth import MockedUser

    name, _, rest = spec.partition(":")
    password, _, roles = rest.partition(":")
    if not name or not password:
        console.print(f"[red]Invalid --user value:[/red] {spec} (expected name:password[:role1,role2])")
        raise typer.Exit(1)
    return name, MockedUser(password=password, roles=[r for r in roles.split(",") if r])


def _read_config(path: Path) -> dict:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read configuration:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def inspect(
    model: Path = typer.Option(..., "--model", "-m", help="Compiled CSN JSON file", exists=True, dir_okay=False),
):
    """Parse the model and list every @mcp annotation."""
    from cap_mcp.annotations import PromptAnnotation, ResourceAnnotation, ToolAnnotation

    print_banner()
    csn, annotations = _load(model)

    table = Table(title="MCP Annotations", box=box.ROUNDED)
    table.add_column("Target", style="cyan")
    table.add_column("Kind")
    table.add_column("Name", style="green")
    table.add_column("Details", style="dim")

    for target, entry in annotations.items():
        if isinstance(entry, ResourceAnnotation):
            details = ", ".join(sorted(entry.functionalities)) or "static"
            if entry.wrap and entry.wrap.tools:
                details += f" | wrap: {', '.join(entry.wrap.modes or ())}"
            table.add_row(target, "resource", entry.name, details)
        elif isinstance(entry, ToolAnnotation):
            kind = f"bound {entry.operation_kind}" if entry.is_bound else entry.operation_kind
            table.add_row(target, kind, entry.name, ", ".join(entry.parameters or {}) or "-")
        elif isinstance(entry, PromptAnnotation):
            table.add_row(target, "prompts", entry.name, ", ".join(p.name for p in entry.prompts))

    console.print(table)
    console.print(f"\n[bold]Services:[/bold] {', '.join(csn.service_names()) or '-'}")


@app.command()
def serve(
    model: Path = typer.Option(..., "--model", "-m", help="Compiled CSN JSON file", exists=True, dir_okay=False),
    data: Optional[Path] = typer.Option(None, "--data", "-d", help="Seed data JSON keyed by entity", exists=True),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON file with the mcp configuration"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: CAP_MCP_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default: CAP_MCP_PORT)"),
    users: list[str] = typer.Option([], "--user", "-u", help="Mocked user name:password[:roles]"),
    db: str = typer.Option(":memory:", "--db", help="SQLite database file"),
):
    """Serve /mcp over HTTP with a SQLite store per service."""
    import uvicorn

    from cap_mcp.app import create_app
    from cap_mcp.auth import MockedIdentityProvider
    from cap_mcp.config import load_configuration, set_config
    from cap_mcp.runtime import AppRuntime
    from cap_mcp.store import SqliteService

    print_banner()
    csn, annotations = _load(model)

    config = load_configuration(_read_config(config_file) if config_file else None)
    set_config(config)

    runtime = AppRuntime(csn)
    for name in csn.service_names():
        service = runtime.serve(SqliteService(name, csn, db))
        if data:
            service.seed_file(data)

    identity_provider = None
    if users:
        identity_provider = MockedIdentityProvider(dict(_parse_user(u) for u in users))

    application = create_app(
        csn,
        services=runtime.services,
        config=config,
        identity_provider=identity_provider,
        annotations=annotations,
    )

    bind_host = host or config.host
    bind_port = port or config.port
    console.print(f"[bold]Services:[/bold] {', '.join(runtime.service_names()) or '-'}")
    console.print(f"[bold]Annotations:[/bold] {len(annotations)}")
    console.print(f"[green]Serving MCP on http://{bind_host}:{bind_port}/mcp[/green]")
    uvicorn.run(application, host=bind_host, port=bind_port)


def main():
    app()


if __name__ == "__main__":
    main()
