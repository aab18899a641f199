# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Command-line interface for ShipSpec.

Every command drives the same flows as the JSON line server; interrupts are
answered interactively through ``rich.prompt``.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from shipspec import __version__
from shipspec.core.errors import ShipSpecError, ShipSpecRuntimeError
from shipspec.core.log_config import configure_logging
from shipspec.utils.redaction import sanitize_error

app = typer.Typer(
    name="shipspec",
    help="Ask questions about a codebase and plan work from it",
    add_completion=False,
)
model_app = typer.Typer(help="Inspect or change the chat model", add_completion=False)
app.add_typer(model_app, name="model")

console = Console()

Event = dict[str, Any]


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"ShipSpec v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Logging level written to stderr (DEBUG, INFO, WARNING, ERROR)",
    ),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this file"),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """ShipSpec - codebase Q&A, specs, planning and production-readiness reports."""
    configure_logging(log_level, log_file=log_file)


# =============================================================================
# Helpers
# =============================================================================


def _error_message(error: BaseException) -> str:
    if isinstance(error, ShipSpecRuntimeError):
        return error.to_public_string()
    return sanitize_error(str(error))


def _run(factory: Callable[[], Awaitable[Any]]) -> Any:
    """Run a coroutine, turning ShipSpec errors into a clean exit."""
    try:
        return asyncio.run(factory())
    except ShipSpecError as e:
        console.print(f"[bold red]Error:[/] {_error_message(e)}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Canceled[/]")
        raise typer.Exit(130)


def render_event(event: Event) -> None:
    """Print a non-terminal event."""
    kind = event.get("type")
    if kind == "status":
        console.print(f"[dim]{event['message']}[/]")
    elif kind == "progress":
        console.print(f"[dim]  > {event['stage']}[/]")
    elif kind == "token":
        console.print(event["content"], end="", markup=False, highlight=False)


def _ask_clarification(payload: dict[str, Any]) -> dict[str, str]:
    console.print("\n[bold]A few questions before drafting the PRD:[/]")
    answers: dict[str, str] = {}
    for i, question in enumerate(payload.get("questions") or []):
        answers[str(i)] = Prompt.ask(f"[cyan]{question}[/]", console=console)
    return answers


def _ask_interview(payload: dict[str, Any]) -> dict[str, Any]:
    console.print("\n[bold]Tell me about this project:[/]")
    answers: dict[str, Any] = {}
    for question in payload.get("questions") or []:
        options = question.get("options") or []
        kind = question.get("type", "text")
        prompt = f"[cyan]{question['question']}[/]"
        if kind == "select" and options:
            answers[question["id"]] = Prompt.ask(prompt, choices=options, console=console)
        elif kind == "multiselect" and options:
            console.print(f"[dim]Options: {', '.join(options)} (comma separated)[/]")
            raw = Prompt.ask(prompt, default="", console=console)
            answers[question["id"]] = [part.strip() for part in raw.split(",") if part.strip()]
        else:
            answers[question["id"]] = Prompt.ask(prompt, default="", console=console)
    return answers


def _ask_review(payload: dict[str, Any]) -> str:
    title = {"prd": "PRD", "spec": "Technical Specification", "report": "Report"}.get(
        payload.get("docType", ""), "Document"
    )
    console.print(Panel(Markdown(payload.get("content") or ""), title=title, border_style="blue"))
    return Prompt.ask(
        f"[bold]{payload.get('instructions') or 'Reply with approve or feedback'}[/]",
        default="approve",
        console=console,
    )


def answer_interrupt(payload: dict[str, Any]) -> Any:
    """Collect the user's response to an interrupt payload."""
    kind = payload.get("kind")
    if kind == "clarification":
        return _ask_clarification(payload)
    if kind == "interview":
        return _ask_interview(payload)
    if kind == "document_review":
        return _ask_review(payload)
    raise ShipSpecRuntimeError(f"Unsupported interrupt kind: {kind}")


async def drive_session(session: Any) -> dict[str, Any]:
    """Run a resumable session to completion, prompting on each interrupt."""
    events: AsyncIterator[Event] = session.start()
    while True:
        pending: Optional[dict[str, Any]] = None
        async for event in events:
            if event["type"] == "complete":
                return event["result"]
            if event["type"] == "interrupt":
                pending = event["payload"]
            else:
                render_event(event)
        if pending is None:
            raise ShipSpecRuntimeError("Session ended without a result.")
        events = session.resume(answer_interrupt(pending))


# =============================================================================
# Workflow commands
# =============================================================================


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about the codebase"),
    reindex: bool = typer.Option(False, "--reindex", help="Rebuild the code index first"),
    cloud_ok: bool = typer.Option(False, "--cloud-ok", help="Consent to sending code to a cloud LLM"),
    local_only: bool = typer.Option(False, "--local-only", help="Refuse to use a cloud LLM"),
) -> None:
    """Answer a question about the current codebase."""
    from shipspec.flows.ask import ask_flow, create_ask_context

    async def run() -> None:
        context = await create_ask_context(
            reindex=reindex, cloud_ok=cloud_ok, local_only=local_only
        )
        async for event in ask_flow(question, context):
            if event["type"] == "complete":
                console.print()
                if event["result"].get("noContext"):
                    console.print(event["result"]["answer"])
            else:
                render_event(event)

    _run(run)


@app.command()
def spec(
    query: str = typer.Argument(..., help="What the specification should cover"),
    reindex: bool = typer.Option(False, "--reindex", help="Rebuild the code index first"),
    cloud_ok: bool = typer.Option(False, "--cloud-ok", help="Consent to sending code to a cloud LLM"),
    local_only: bool = typer.Option(False, "--local-only", help="Refuse to use a cloud LLM"),
) -> None:
    """Generate a specification from the codebase."""
    from shipspec.flows.spec import spec_flow

    async def run() -> dict[str, Any]:
        async for event in spec_flow(
            query, reindex=reindex, cloud_ok=cloud_ok, local_only=local_only
        ):
            if event["type"] == "complete":
                return event["result"]
            render_event(event)
        raise ShipSpecRuntimeError("Spec run ended without a result.")

    result = _run(run)
    console.print(Markdown(result["finalSpec"]))


@app.command()
def planning(
    idea: Optional[str] = typer.Argument(None, help="The feature or product idea"),
    track: Optional[str] = typer.Option(None, "--track", "-t", help="Resume an existing track"),
    reindex: bool = typer.Option(False, "--reindex", help="Rebuild the code index first"),
    no_save: bool = typer.Option(False, "--no-save", help="Do not write track artifacts"),
    cloud_ok: bool = typer.Option(False, "--cloud-ok", help="Consent to sending code to a cloud LLM"),
    local_only: bool = typer.Option(False, "--local-only", help="Refuse to use a cloud LLM"),
) -> None:
    """Turn an idea into a PRD, a technical spec and task prompts."""
    from shipspec.flows.planning import PlanningSession

    async def run() -> dict[str, Any]:
        session = await PlanningSession.create(
            idea=idea,
            track_id=track,
            reindex=reindex,
            no_save=no_save,
            cloud_ok=cloud_ok,
            local_only=local_only,
        )
        console.print(f"[dim]Track: {session.track_id}[/]")
        return await drive_session(session)

    result = _run(run)
    if result.get("taskPrompts"):
        console.print(Markdown(result["taskPrompts"]))
    if not no_save:
        console.print(f"\n[green]Planning artifacts saved to[/] {result['trackDir']}")
    console.print(f"[dim]Resume later with: shipspec planning --track {result['trackId']}[/]")


@app.command()
def productionalize(
    context: Optional[str] = typer.Argument(None, help="Extra context about the project"),
    session: Optional[str] = typer.Option(None, "--session", help="Session id to use"),
    interactive: bool = typer.Option(
        True, "--interactive/--no-interactive", help="Ask interview and review questions"
    ),
    enable_scans: bool = typer.Option(False, "--enable-scans", help="Run semgrep, gitleaks and trivy"),
    categories: Optional[str] = typer.Option(
        None, "--categories", help="Comma-separated finding categories to keep"
    ),
    reindex: bool = typer.Option(False, "--reindex", help="Rebuild the code index first"),
    no_save: bool = typer.Option(False, "--no-save", help="Do not write reports"),
    cloud_ok: bool = typer.Option(False, "--cloud-ok", help="Consent to sending code to a cloud LLM"),
    local_only: bool = typer.Option(False, "--local-only", help="Refuse to use a cloud LLM"),
) -> None:
    """Produce a production-readiness report and remediation prompts."""
    from shipspec.flows.productionalize import ProductionalizeSession

    async def run() -> dict[str, Any]:
        created = await ProductionalizeSession.create(
            context=context,
            session_id=session,
            reindex=reindex,
            enable_scans=enable_scans,
            categories=categories,
            cloud_ok=cloud_ok,
            local_only=local_only,
            no_save=no_save,
            interactive=interactive,
        )
        return await drive_session(created)

    result = _run(run)
    console.print(Markdown(result["finalReport"]))
    for skipped in result.get("sastSkipped") or []:
        console.print(f"[yellow]Skipped scanner:[/] {skipped}")
    if not no_save:
        console.print("\n[green]Report saved to[/] .ship-spec/outputs/latest-report.md")


# =============================================================================
# Administration
# =============================================================================


@app.command()
def connect(
    openrouter_key: str = typer.Option(
        ..., "--openrouter-key", prompt="OpenRouter API key", hide_input=True
    ),
    tavily_key: Optional[str] = typer.Option(None, "--tavily-key", help="Tavily API key"),
) -> None:
    """Store API keys and initialize .ship-spec/ in this project."""
    from shipspec.flows.admin import connect as connect_project

    try:
        result = connect_project(openrouter_key, tavily_key or None)
    except ShipSpecError as e:
        console.print(f"[bold red]Error:[/] {_error_message(e)}")
        raise typer.Exit(1)
    console.print(f"[green]Connected[/] {result['projectRoot']} ({result['projectId']})")


@app.command()
def tracks() -> None:
    """List planning tracks, most recently updated first."""
    from shipspec.flows.admin import list_tracks

    rows = list_tracks()
    if not rows:
        console.print("[dim]No planning tracks yet[/]")
        return
    table = Table(title="Planning tracks")
    table.add_column("Track", style="cyan")
    table.add_column("Phase")
    table.add_column("Updated")
    table.add_column("Idea")
    for row in rows:
        table.add_row(row["id"], row.get("phase") or "", row.get("updatedAt") or "", row.get("initialIdea") or "")
    console.print(table)


@app.command()
def reports() -> None:
    """List saved production-readiness reports."""
    from shipspec.flows.admin import list_outputs

    rows = list_outputs()
    if not rows:
        console.print("[dim]No reports yet[/]")
        return
    table = Table(title="Reports")
    table.add_column("File", style="cyan")
    table.add_column("Timestamp")
    table.add_column("Size", justify="right")
    for row in rows:
        table.add_row(row["name"], row["timestamp"], str(row["size"]))
    console.print(table)


@model_app.command("list")
def model_list() -> None:
    """Show the supported chat models."""
    from shipspec.flows.admin import list_models

    table = Table(title="Supported models")
    table.add_column("Alias", style="cyan")
    table.add_column("Model")
    for entry in list_models():
        table.add_row(entry["alias"], entry["name"])
    console.print(table)


@model_app.command("current")
def model_current() -> None:
    """Print the configured chat model."""
    from shipspec.flows.admin import current_model

    try:
        console.print(current_model())
    except ShipSpecError as e:
        console.print(f"[bold red]Error:[/] {_error_message(e)}")
        raise typer.Exit(1)


@model_app.command("set")
def model_set(model: str = typer.Argument(..., help="Model alias or full model name")) -> None:
    """Persist the chat model in .ship-spec/settings.yaml."""
    from shipspec.flows.admin import set_model

    try:
        chosen = set_model(model)
    except ShipSpecError as e:
        console.print(f"[bold red]Error:[/] {_error_message(e)}")
        raise typer.Exit(1)
    console.print(f"[green]Model set to[/] {chosen}")


@app.command()
def serve() -> None:
    """Serve the line-delimited JSON protocol over stdin/stdout."""
    from shipspec.backend.server import run_server

    run_server()


__all__ = ["answer_interrupt", "app", "drive_session", "render_event"]
