"""promptlib - prompt library CLI."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy.orm import Session

from promptlib import __version__
from promptlib.config import (
    DEFAULT_LLM_BACKEND,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_OLLAMA_URL,
    ENV_DB,
    ENV_LLM,
    ENV_OLLAMA_MODEL,
    ENV_OLLAMA_URL,
    default_db_path,
)
from promptlib.database import get_session_factory, init_db, reset_engine
from promptlib.providers import default_registry
from promptlib.schemas.importing import ImportOptions
from promptlib.schemas.prompt import HumanPrompt, OutputExpectations, PromptFilters, PromptMetadata
from promptlib.schemas.provider import RenderOptions
from promptlib.services.enhancement import EnhancementAgent, LLMService, MockLLMService, OllamaLLMService
from promptlib.services.history import AuditTrailStore, HistoryService
from promptlib.services.importer import ImportService
from promptlib.services.prompt_manager import PromptManager
from promptlib.services.ratings import RatingService
from promptlib.services.storage import PromptStorage


def _version_callback(value: bool) -> None:
    if value:
        print(f"promptlib {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool) -> None:
    if value:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
            force=True,
        )


app = typer.Typer(
    name="promptlib",
    help="promptlib: manage, enhance and render LLM prompts locally.",
    add_completion=False,
    no_args_is_help=True,
)


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Log debug output to stderr.", callback=_verbose_callback),
    ] = False,
) -> None:
    """promptlib: manage, enhance and render LLM prompts locally."""


console = Console()

DbOption = Annotated[
    Path | None,
    typer.Option("--db", envvar=ENV_DB, help="Override path to SQLite database."),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON.")]
VarOption = Annotated[
    list[str] | None,
    typer.Option("--var", help="Variable value as key=value (repeatable)."),
]
ModelOption = Annotated[str | None, typer.Option("--model", "-m", help="Target model.")]


def _db_path(db: Path | None) -> Path:
    return db if db is not None else default_db_path()


def _make_llm(backend: str, ollama_url: str, ollama_model: str) -> LLMService:
    if backend == "mock":
        return MockLLMService()
    if backend == "ollama":
        return OllamaLLMService(base_url=ollama_url, model=ollama_model)
    raise ValueError(f"Unknown LLM backend '{backend}' (expected mock or ollama)")


def _get_manager(db: Path | None, llm: LLMService | None = None) -> tuple[PromptManager, Session]:
    """Return (manager, session) after ensuring the database exists."""
    path = _db_path(db)
    reset_engine()
    init_db(path)
    session = get_session_factory(path)()
    manager = PromptManager(
        PromptStorage(session),
        EnhancementAgent(llm or MockLLMService()),
        default_registry(),
        history=HistoryService(AuditTrailStore()),
        ratings=RatingService(session),
    )
    return manager, session


def _parse_vars(pairs: list[str] | None) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --var '{pair}', expected key=value")
        values[key.strip()] = value
    return values


def _fail(exc: Exception) -> typer.Exit:
    rprint(f"[red]Error:[/red] {exc}")
    return typer.Exit(1)


# ------------------------------------------------------------------
# init
# ------------------------------------------------------------------


@app.command()
def init(db: DbOption = None) -> None:
    """Initialize the promptlib database."""
    path = _db_path(db)
    reset_engine()
    init_db(path)
    rprint(f"[green]✓[/green] Database initialized at [bold]{path}[/bold]")


# ------------------------------------------------------------------
# create
# ------------------------------------------------------------------


@app.command()
def create(
    title: Annotated[str, typer.Argument(help="Prompt title")],
    goal: Annotated[str, typer.Option("--goal", "-g", help="What the prompt should achieve.")],
    audience: Annotated[str, typer.Option("--audience", "-a", help="Who the output is for.")],
    step: Annotated[
        list[str],
        typer.Option("--step", "-s", help="Step the model should follow (repeatable)."),
    ],
    output_format: Annotated[str, typer.Option("--format", help="Expected output format.")] = "Text",
    field: Annotated[
        list[str] | None,
        typer.Option("--field", help="Expected output field (repeatable)."),
    ] = None,
    owner: Annotated[str, typer.Option("--owner", "-o", help="Prompt owner.")] = "cli",
    summary: Annotated[str, typer.Option("--summary", help="One-line summary.")] = "",
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Tag (repeatable)."),
    ] = None,
    slug: Annotated[str | None, typer.Option("--slug", help="Explicit slug.")] = None,
    db: DbOption = None,
) -> None:
    """Create a new draft prompt."""
    manager, session = _get_manager(db)
    try:
        record = manager.create_prompt(
            HumanPrompt(
                goal=goal,
                audience=audience,
                steps=step,
                output_expectations=OutputExpectations(format=output_format, fields=field or []),
            ),
            PromptMetadata(title=title, summary=summary, tags=tag or [], owner=owner),
            slug=slug,
        )
        session.commit()
        rprint(f"[green]✓[/green] Created [bold]{record.slug}[/bold] ({record.id}) v{record.version}")
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# list
# ------------------------------------------------------------------


@app.command("list")
def list_prompts(
    search: Annotated[str | None, typer.Option("--search", help="Match title, summary or tags.")] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Only prompts with this tag (repeatable)."),
    ] = None,
    owner: Annotated[str | None, typer.Option("--owner", help="Only prompts by this owner.")] = None,
    status: Annotated[str | None, typer.Option("--status", help="draft, active or archived.")] = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """List stored prompts."""
    manager, session = _get_manager(db)
    try:
        filters = PromptFilters(
            search=search,
            tags=tag or None,
            owner=owner,
            status=[status] if status else None,
        )
        prompts = manager.list_prompts(filters)
        if not prompts:
            rprint("[dim]No prompts found.[/dim]")
            return

        if json_output:
            data = [
                {
                    "id": p.id,
                    "slug": p.slug,
                    "title": p.metadata.title,
                    "status": p.status,
                    "version": p.version,
                    "tags": p.metadata.tags,
                    "enhanced": p.prompt_structured is not None,
                    "updated_at": p.updated_at,
                }
                for p in prompts
            ]
            typer.echo(json.dumps(data, indent=2))
        else:
            table = Table(title="Prompts")
            table.add_column("Slug", style="cyan")
            table.add_column("Title")
            table.add_column("Status")
            table.add_column("Version", justify="right")
            table.add_column("Tags", style="dim")
            table.add_column("Rating", justify="right")
            for p in prompts:
                table.add_row(
                    p.slug,
                    p.metadata.title,
                    p.status,
                    str(p.version),
                    ", ".join(p.metadata.tags) or "-",
                    f"{p.average_rating:.1f}" if p.history.ratings else "-",
                )
            console.print(table)
    except ValueError as exc:
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# show
# ------------------------------------------------------------------


@app.command()
def show(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show a prompt record."""
    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        if json_output:
            typer.echo(record.model_dump_json(indent=2))
            return

        rprint(f"[bold cyan]{record.metadata.title}[/bold cyan] ({record.slug}) v{record.version}")
        rprint(
            f"[dim]Status: {record.status} | Owner: {record.metadata.owner or 'none'} | "
            f"Tags: {', '.join(record.metadata.tags) or 'none'}[/dim]"
        )
        rprint()
        console.print(str(record.prompt_human), markup=False)
        if record.prompt_structured is not None:
            rprint()
            rprint("[bold]System:[/bold]")
            for instruction in record.prompt_structured.system:
                console.print(f"  {instruction}", markup=False)
            rprint("[bold]User template:[/bold]")
            console.print(record.prompt_structured.user_template, markup=False)
            if record.variables:
                rprint(f"[bold]Variables:[/bold] {', '.join(v.key for v in record.variables)}")
        else:
            rprint("[dim]Not enhanced yet.[/dim]")
    except ValueError as exc:
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# update
# ------------------------------------------------------------------


@app.command()
def update(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    title: Annotated[str | None, typer.Option("--title", help="New title.")] = None,
    summary: Annotated[str | None, typer.Option("--summary", help="New summary.")] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Replace tags (repeatable)."),
    ] = None,
    status: Annotated[str | None, typer.Option("--status", help="draft, active or archived.")] = None,
    goal: Annotated[str | None, typer.Option("--goal", help="New goal.")] = None,
    audience: Annotated[str | None, typer.Option("--audience", help="New audience.")] = None,
    author: Annotated[str | None, typer.Option("--author", help="Recorded as the version author.")] = None,
    db: DbOption = None,
) -> None:
    """Update a prompt, recording a new version when anything changed."""
    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        updates: dict[str, Any] = {}
        metadata = {
            key: value
            for key, value in (("title", title), ("summary", summary), ("tags", tag))
            if value is not None
        }
        if metadata:
            updates["metadata"] = record.metadata.model_copy(update=metadata)
        human = {key: value for key, value in (("goal", goal), ("audience", audience)) if value is not None}
        if human:
            updates["prompt_human"] = record.prompt_human.model_copy(update=human)
        if status is not None:
            updates["status"] = status

        updated = manager.update_prompt(record.id, updates, author=author)
        session.commit()
        if updated.version == record.version:
            rprint(f"[dim]No changes to {record.slug}.[/dim]")
        else:
            rprint(f"[green]✓[/green] Updated [bold]{updated.slug}[/bold] to v{updated.version}")
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# enhance
# ------------------------------------------------------------------


@app.command()
def enhance(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    provider: Annotated[
        str | None,
        typer.Option("--provider", "-p", help="Provider the structure should target."),
    ] = None,
    domain: Annotated[str | None, typer.Option("--domain", help="Domain knowledge to pass along.")] = None,
    llm: Annotated[
        str,
        typer.Option("--llm", envvar=ENV_LLM, help="Enhancement backend: mock or ollama."),
    ] = DEFAULT_LLM_BACKEND,
    ollama_url: Annotated[
        str,
        typer.Option("--ollama-url", envvar=ENV_OLLAMA_URL, help="Ollama server URL."),
    ] = DEFAULT_OLLAMA_URL,
    ollama_model: Annotated[
        str,
        typer.Option("--ollama-model", envvar=ENV_OLLAMA_MODEL, help="Ollama model name."),
    ] = DEFAULT_OLLAMA_MODEL,
    db: DbOption = None,
) -> None:
    """Generate a structured, variable-parameterized version of a prompt."""
    try:
        service = _make_llm(llm, ollama_url, ollama_model)
    except ValueError as exc:
        raise _fail(exc) from None

    manager, session = _get_manager(db, service)
    try:
        record = manager.find_prompt(ref)
        result = manager.enhance_prompt(record.id, target_provider=provider, domain_knowledge=domain)
        session.commit()
        rprint(
            f"[green]✓[/green] Enhanced [bold]{record.slug}[/bold] to v{record.version + 1}"
            f" (confidence {result.confidence:.2f})"
        )
        for question in result.questions:
            rprint(f"  [cyan]{question.variable_key}[/cyan]: {question.text}")
        for warning in result.warnings:
            rprint(f"  [yellow]warning:[/yellow] {warning}")
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        if isinstance(service, OllamaLLMService):
            service.close()
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# render
# ------------------------------------------------------------------


def _render_options(
    model: str | None, temperature: float | None, max_tokens: int | None, var: list[str] | None
) -> RenderOptions:
    return RenderOptions(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        variables=_parse_vars(var) or None,
    )


@app.command()
def render(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    provider: Annotated[str, typer.Argument(help="Provider id, e.g. openai")],
    model: ModelOption = None,
    temperature: Annotated[float | None, typer.Option("--temperature", help="Sampling temperature.")] = None,
    max_tokens: Annotated[int | None, typer.Option("--max-tokens", help="Completion token limit.")] = None,
    var: VarOption = None,
    db: DbOption = None,
) -> None:
    """Render a prompt as a provider request payload (JSON on stdout)."""
    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        payload = manager.render_prompt(
            record.id, provider, _render_options(model, temperature, max_tokens, var)
        )
        session.commit()
        typer.echo(payload.model_dump_json(indent=2))
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# export
# ------------------------------------------------------------------


@app.command()
def export(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    provider: Annotated[str, typer.Argument(help="Provider id, e.g. anthropic")],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write into this directory instead of stdout."),
    ] = None,
    filename: Annotated[str | None, typer.Option("--filename", help="Custom file name.")] = None,
    model: ModelOption = None,
    var: VarOption = None,
    db: DbOption = None,
) -> None:
    """Export a rendered prompt with its export metadata."""
    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        options = _render_options(model, None, None, var)
        if output:
            path = manager.export_to_file(record.id, provider, output, options, filename=filename)
            session.commit()
            rprint(f"[green]✓[/green] Exported [bold]{record.slug}[/bold] to {path}")
        else:
            result = manager.export_prompt(record.id, provider, options, filename=filename)
            session.commit()
            typer.echo(result.content)
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# import
# ------------------------------------------------------------------


@app.command("import")
def import_prompts(
    paths: Annotated[list[Path], typer.Argument(help="JSON files or directories to import")],
    on_conflict: Annotated[
        str,
        typer.Option("--on-conflict", help="skip, overwrite, create_new or prompt."),
    ] = "skip",
    source: Annotated[
        str | None,
        typer.Option("--source", help="Source format: internal, openai, anthropic or meta."),
    ] = None,
    owner: Annotated[str | None, typer.Option("--owner", help="Owner for imported prompts.")] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Tag for imported prompts (repeatable)."),
    ] = None,
    slug_prefix: Annotated[str | None, typer.Option("--slug-prefix", help="Prefix for new slugs.")] = None,
    no_validate: Annotated[
        bool, typer.Option("--no-validate", help="Import even if format validation fails.")
    ] = False,
    db: DbOption = None,
) -> None:
    """Import provider-format prompt files. Directories import their *.json files."""
    manager, session = _get_manager(db)
    try:
        options = ImportOptions(
            source_provider=source,
            conflict_resolution=on_conflict,
            default_owner=owner,
            default_tags=tag or None,
            slug_prefix=slug_prefix,
            validate_before_import=not no_validate,
        )
        importer = ImportService(manager)
        files = [p for p in paths if not p.is_dir()]
        results = [importer.import_from_files(files, options)] if files else []
        results += [importer.import_from_directory(p, options) for p in paths if p.is_dir()]
        session.commit()

        for result in results:
            for outcome in result.imported:
                rprint(f"[green]✓[/green] Imported [bold]{outcome.record.slug}[/bold]")
            for skipped in result.skipped:
                rprint(f"[yellow]-[/yellow] Skipped {skipped.filename}: {skipped.reason}")
            for failed in result.failed:
                rprint(f"[red]✗[/red] Failed {failed.filename}: {failed.error}")
        rprint(
            f"[dim]{sum(r.summary.imported for r in results)} imported, "
            f"{sum(r.summary.skipped for r in results)} skipped, "
            f"{sum(r.summary.failed for r in results)} failed[/dim]"
        )
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# log
# ------------------------------------------------------------------


@app.command()
def log(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Show at most N versions.")] = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show version history for a prompt, newest first."""
    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        entries = manager.history.get_history_display(record, include_ratings=False, max_entries=limit)
        if json_output:
            typer.echo(json.dumps([e.model_dump(exclude={"ratings", "previous_version"}) for e in entries], indent=2))
            return

        table = Table(title=f"Versions of '{record.slug}'")
        table.add_column("Version", justify="right", style="cyan")
        table.add_column("Author")
        table.add_column("Message")
        table.add_column("Created", style="dim")
        for entry in entries:
            table.add_row(str(entry.version), entry.author, entry.message, entry.created_at[:16])
        console.print(table)
    except ValueError as exc:
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# rate
# ------------------------------------------------------------------


@app.command()
def rate(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    score: Annotated[int, typer.Argument(help="Score from 1 to 5")],
    user: Annotated[str, typer.Option("--user", "-u", help="Who is rating.")] = "cli",
    note: Annotated[str, typer.Option("--note", "-n", help="Optional note.")] = "",
    db: DbOption = None,
) -> None:
    """Rate a prompt. A user's new rating replaces their previous one."""
    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        manager.rate_prompt(record.id, user, score, note)
        average = manager.ratings.get_average_rating(record.id)
        session.commit()
        rprint(f"[green]✓[/green] Rated [bold]{record.slug}[/bold] {score}/5 (average {average:.2f})")
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# delete
# ------------------------------------------------------------------


@app.command()
def delete(
    ref: Annotated[str, typer.Argument(help="Prompt id or slug")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation.")] = False,
    db: DbOption = None,
) -> None:
    """Delete a prompt with its cached renders, ratings and run logs."""
    if not yes:
        confirm = typer.confirm(f"Delete prompt '{ref}'?")
        if not confirm:
            rprint("[dim]Aborted.[/dim]")
            raise typer.Exit(0)

    manager, session = _get_manager(db)
    try:
        record = manager.find_prompt(ref)
        manager.delete_prompt(record.id, author="cli")
        session.commit()
        rprint(f"[green]✓[/green] Deleted [bold]{record.slug}[/bold]")
    except ValueError as exc:
        session.rollback()
        raise _fail(exc) from None
    finally:
        session.close()
        reset_engine()


# ------------------------------------------------------------------
# providers
# ------------------------------------------------------------------


@app.command()
def providers(json_output: JsonOption = False) -> None:
    """List the registered provider adapters and their models."""
    registry = default_registry()
    infos = registry.list_providers()
    if json_output:
        typer.echo(json.dumps([i.model_dump() for i in infos], indent=2))
        return

    table = Table(title="Providers")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Default model")
    table.add_column("Models", style="dim")
    for info in infos:
        table.add_row(info.id, info.name, info.default_model or "-", ", ".join(info.supported_models))
    console.print(table)
