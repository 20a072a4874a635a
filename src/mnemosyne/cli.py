"""
Command-line interface for Mnemosyne.

Commands:
    serve         - Start the FastAPI server
    index         - Index (or re-index) the vault
    query         - Direct retrieval against the index
    ask           - Run a query through an agent
    agents        - List agents
    templates     - List built-in agent templates
    add-agent     - Create an agent from a template
    stats         - Show index, provider and agent statistics
    add-provider  - Register a model provider (API key stored encrypted)
    version       - Show version information
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from mnemosyne.errors import MnemosyneError

app = typer.Typer(
    name="mnemosyne",
    help="Retrieval-augmented agents over your notes",
    add_completion=False,
)
console = Console()

PASSWORD_ENVVAR = "MNEMOSYNE_MASTER_PASSWORD"


def configure_logging() -> None:
    from mnemosyne.config import settings

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_service():
    """Build and initialize the service from settings."""
    from mnemosyne.service import MnemosyneService

    service = MnemosyneService.from_settings()
    asyncio.run(service.initialize())
    return service


def fail(error: Exception) -> None:
    """Print an error and exit non-zero."""
    if isinstance(error, MnemosyneError):
        console.print(f"[red]{error.code}: {error.message}[/red]")
        for key, value in error.context.items():
            console.print(f"[dim]  {key}: {value}[/dim]")
    else:
        console.print(f"[red]Error: {error}[/red]")
    raise typer.Exit(1)


@app.callback()
def main() -> None:
    configure_logging()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind (default from settings)"),
    port: Optional[int] = typer.Option(None, help="Port to bind (default from settings)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Start the FastAPI server."""
    import uvicorn

    from mnemosyne.config import settings

    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[green]Starting Mnemosyne server on {host}:{port}[/green]")

    uvicorn.run(
        "mnemosyne.api.main:app",
        host=host,
        port=port,
        reload=reload,
        workers=1,  # Session key lives in process memory
    )


@app.command()
def index(
    vault: Optional[Path] = typer.Option(None, help="Vault folder (default from settings)"),
    scope: Optional[list[str]] = typer.Option(None, "--scope", "-s", help="Only index these folders"),
    clear: bool = typer.Option(False, "--clear", help="Clear the index first"),
    incremental: bool = typer.Option(False, "--incremental", "-i", help="Only re-embed changed notes"),
) -> None:
    """Index markdown notes into the vector store."""
    from mnemosyne.retrieval.sources import FileSystemDocumentSource

    try:
        service = build_service()
        if vault is not None:
            service.source = FileSystemDocumentSource(vault)

        valid, message = service.source.validate()
        if not valid:
            console.print(f"[red]{message}[/red]")
            raise typer.Exit(1)
        console.print(f"[blue]{message} in {service.source.root}[/blue]")

        if clear:
            asyncio.run(service.retriever.clear_index())
            console.print("[yellow]Index cleared[/yellow]")

        with console.status("[bold green]Chunking and embedding..."):
            report = asyncio.run(service.ingest_vault(scope or None, incremental=incremental))
    except MnemosyneError as e:
        fail(e)

    console.print(f"[green]✓ Indexed {report.chunks_ingested} chunks from {report.documents_processed} documents "
                  f"in {report.duration_ms / 1000:.1f}s[/green]")
    if incremental:
        console.print(f"[dim]{len(report.unchanged_documents)} unchanged, {len(report.removed_documents)} removed[/dim]")
    if report.skipped_documents:
        console.print(f"[dim]Skipped {len(report.skipped_documents)} empty documents[/dim]")
    for document_id, reason in report.unreadable_documents.items():
        console.print(f"[yellow]⚠ Could not read {document_id}: {reason}[/yellow]")
    if report.failed_chunk_ids:
        console.print(f"[yellow]⚠ {len(report.failed_chunk_ids)} chunks failed:[/yellow]")
        for chunk_id in report.failed_chunk_ids[:10]:
            console.print(f"  • {chunk_id}: {report.errors.get(chunk_id, '')}")


@app.command()
def query(
    text: str = typer.Argument(..., help="Search text"),
    top_k: int = typer.Option(5, "--top-k", "-k", help="Maximum results"),
    threshold: float = typer.Option(0.0, "--threshold", "-t", help="Minimum score"),
    strategy: str = typer.Option("hybrid", help="semantic, keyword or hybrid"),
    content_type: Optional[list[str]] = typer.Option(None, "--type", help="Filter by content type"),
) -> None:
    """Search the index directly, without an agent."""
    filters = {"content_type": content_type} if content_type else None
    try:
        service = build_service()
        results = asyncio.run(
            service.query(text, filters=filters, top_k=top_k, score_threshold=threshold, strategy=strategy)
        )
    except (MnemosyneError, ValueError) as e:
        fail(e)

    if not results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(title=f"Results for: {text}")
    table.add_column("#", style="dim")
    table.add_column("Score", style="green")
    table.add_column("Document", style="cyan")
    table.add_column("Section")
    table.add_column("Preview")
    for r in results:
        preview = " ".join(r.chunk.body.split())[:80]
        table.add_row(str(r.rank), f"{r.score:.3f}", r.document_title, r.section, preview)
    console.print(table)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to ask"),
    agent: str = typer.Option("default", "--agent", "-a", help="Agent id"),
    capability: Optional[str] = typer.Option(
        None, "--capability", "-c", help="Route by capability instead of agent id (\"auto\" infers it)"
    ),
    password: Optional[str] = typer.Option(
        None, envvar=PASSWORD_ENVVAR, help="Master password (prompted if needed)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed output"),
) -> None:
    """Run a question through an agent."""
    try:
        service = build_service()
        if service.record.password_verifier is not None:
            password = password or typer.prompt("Master password", hide_input=True)
            service.unlock(password)
        console.print(f"[blue]Question:[/blue] {question}\n")
        with console.status("[bold green]Thinking..."):
            if capability:
                routed = None if capability == "auto" else capability
                response = asyncio.run(service.delegate(question, routed))
            else:
                response = asyncio.run(service.run_agent(agent, question))
    except (MnemosyneError, ValueError) as e:
        fail(e)

    if capability:
        console.print(f"[dim]Answered by agent {response.agent_id}[/dim]")
    console.print("[green]Answer:[/green]")
    console.print(response.answer)
    console.print()

    if response.sources:
        console.print("[blue]Sources:[/blue]")
        for s in response.sources:
            section = f" › {s.section}" if s.section else ""
            console.print(f"  • {s.document_title}{section} ({s.score:.0%})")
        console.print()

    if verbose:
        table = Table(title="Metadata")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Latency", f"{response.execution_time_ms:.0f}ms")
        table.add_row("Provider", f"{response.provider_id} ({response.model})")
        table.add_row("Chunks Retrieved", str(response.retrieved_chunks))
        table.add_row("Tool Calls", str(len(response.tool_results)))
        table.add_row("Tokens", str(response.usage.total_tokens))
        for node, ms in response.node_timings.items():
            table.add_row(f"  {node}", f"{ms:.0f}ms")

        console.print(table)


@app.command()
def agents() -> None:
    """List configured agents."""
    try:
        service = build_service()
    except MnemosyneError as e:
        fail(e)

    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Capabilities", style="dim")
    for agent in service.agents.list_agents():
        style = "green" if agent["status"] == "ready" else "yellow"
        table.add_row(
            agent["id"],
            agent["name"],
            f"[{style}]{agent['status']}[/{style}]",
            ", ".join(agent["capabilities"]),
        )
    console.print(table)


@app.command()
def templates(search: Optional[str] = typer.Argument(None, help="Filter by name or description")) -> None:
    """List built-in agent templates."""
    from mnemosyne.agents.templates import list_templates, search_templates

    table = Table(title="Agent Templates")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Description", style="dim")
    table.add_column("Capabilities")
    for template_id, template in search_templates(search) if search else list_templates():
        table.add_row(template_id, template.name, template.description, ", ".join(template.capabilities))
    console.print(table)


@app.command("add-agent")
def add_agent(
    template: str = typer.Argument(..., help="Template id (see `mnemosyne templates`)"),
    agent_id: str = typer.Option(..., "--id", help="New agent id"),
    provider: str = typer.Option(..., "--provider", "-p", help="Provider id the agent uses"),
    name: Optional[str] = typer.Option(None, help="Display name (template name if omitted)"),
) -> None:
    """Create an agent from a built-in template."""
    overrides = {"name": name} if name else {}
    try:
        service = build_service()
        config = service.agents.create_from_template(template, agent_id, provider, **overrides)
    except MnemosyneError as e:
        fail(e)

    console.print(f"[green]✓ Added agent {config.id} ({config.name})[/green]")


@app.command()
def stats(as_json: bool = typer.Option(False, "--json", help="Print raw JSON")) -> None:
    """Show index, provider and agent statistics."""
    try:
        service = build_service()
    except MnemosyneError as e:
        fail(e)

    data = service.get_stats()
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return

    rag = data["rag"]
    table = Table(title="Index")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Backend", rag["backend"])
    table.add_row("Embedding model", rag["embedding_model"])
    table.add_row("Dimension", str(rag["dimension"]))
    table.add_row("Documents", str(rag["total_documents"]))
    table.add_row("Chunks", str(rag["total_entries"]))
    table.add_row("Stale chunks", str(rag["stale_entries"]))
    console.print(table)

    llm = data["llm"]
    console.print(
        f"Providers: {llm['initialized_providers']}/{llm['total_providers']} initialized, "
        f"agents: {data['agents']['ready_agents']}/{data['agents']['total_agents']} ready"
    )
    console.print("[green]Ready[/green]" if data["ready"] else "[yellow]Not ready[/yellow]")


@app.command("add-provider")
def add_provider(
    name: str = typer.Argument(..., help="Display name"),
    backend: str = typer.Option(..., help="openai, anthropic, ollama or custom"),
    model: str = typer.Option(..., help="Model name"),
    base_url: Optional[str] = typer.Option(None, help="Endpoint override"),
    provider_id: Optional[str] = typer.Option(None, "--id", help="Provider id (generated if omitted)"),
    api_key: Optional[str] = typer.Option(None, help="API key (prompted for cloud backends)"),
    password: Optional[str] = typer.Option(None, envvar=PASSWORD_ENVVAR, help="Master password"),
    test: bool = typer.Option(True, help="Send a test prompt after adding"),
) -> None:
    """Register a model provider; the API key is stored encrypted."""
    from pydantic import ValidationError

    from mnemosyne.llm.provider import ProviderConfig

    try:
        config = ProviderConfig(
            id=provider_id or uuid.uuid4().hex[:8],
            name=name,
            backend=backend,
            model=model,
            base_url=base_url,
        )
    except ValidationError as e:
        fail(ValueError(str(e)))

    if api_key is None and backend in ("openai", "anthropic"):
        api_key = typer.prompt("API key", hide_input=True)

    try:
        service = build_service()
        if api_key:
            password = password or typer.prompt("Master password", hide_input=True)
            service.unlock(password)
        config = service.add_provider(config, api_key=api_key)
    except MnemosyneError as e:
        fail(e)

    console.print(f"[green]✓ Added provider {config.id} ({config.backend}/{config.model})[/green]")
    if test:
        with console.status("[bold green]Testing provider..."):
            ok = asyncio.run(service.providers.test_provider(config.id))
        if ok:
            console.print("[green]✓ Provider responded[/green]")
        else:
            console.print("[yellow]⚠ Provider test failed; check the model name, endpoint and key[/yellow]")


@app.command()
def version() -> None:
    """Show version information."""
    from mnemosyne import __version__

    console.print(f"Mnemosyne v{__version__}")


if __name__ == "__main__":
    app()
