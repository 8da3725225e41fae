"""
surfacing_engine.cli

Command-line interface for the **Memory Surfacing Decision Engine**.

``serve`` starts the HTTP service; ``evaluate`` and ``feedback`` talk to a
running instance over HTTP; ``check-corpus`` validates a corpus file locally
without starting anything.
"""

from __future__ import annotations

# ─────────────────────────────── stdlib imports ───────────────────────────────
import asyncio
import json
import logging
from collections import Counter
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

# ────────────────────────────── third-party imports ────────────────────────────
import httpx
import typer
from rich import print as rprint
from rich.panel import Panel
from rich.table import Table

from surfacing_engine.core.embedding import HashingEmbedder
from surfacing_engine.core.models import Outcome
from surfacing_engine.core.store import load_corpus
from surfacing_engine.settings import get_settings
from surfacing_engine.utils.exceptions import CorpusError
from surfacing_engine.utils.http import HTTPTimeouts

logger = logging.getLogger("surfacing_engine.cli")

# ---------------------------------------------------------------------------

# Typer application

# ---------------------------------------------------------------------------

app = typer.Typer(
    name="surfacing",
    help="Run or query a Memory Surfacing Decision Engine.",
)

API_URL_ENV = "SURFACING_API_URL"
DEFAULT_API = "http://localhost:8000"

# ---------------------------------------------------------------------------

# Helper utilities

# ---------------------------------------------------------------------------


T = TypeVar("T")


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run an ``async`` command body, turning failures into a red panel and exit code 1."""
    try:
        return asyncio.run(coro)
    except Exception as exc:
        rprint(Panel(str(exc), title="Error", style="bold red"))
        raise typer.Exit(1) from exc


def _client(
    base_url: str,
    *,
    timeouts: HTTPTimeouts | None = None,
) -> httpx.AsyncClient:
    """Return an httpx client with separate connect/read timeouts."""
    timeouts = timeouts or HTTPTimeouts()
    timeout = httpx.Timeout(timeouts.read, connect=timeouts.connect)
    return httpx.AsyncClient(base_url=base_url, timeout=timeout)


def _metadata_option(
    _ctx: typer.Context,
    _param: typer.CallbackParam,
    value: str | None,
) -> dict[str, Any] | None:
    """Parse `--metadata` JSON string into dict."""
    if not value:
        return None
    try:
        result = json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Invalid JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise typer.BadParameter("Metadata must be a JSON object")
    return result


async def _request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    retries: int = 0,
    backoff: float | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request retrying transport failures with exponential backoff."""
    if backoff is None:
        backoff = HTTPTimeouts().backoff_base
    attempt = 0
    while True:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            if attempt >= retries:
                raise
            logger.warning(
                "%s %s failed (attempt %d/%d): %s",
                method,
                url,
                attempt + 1,
                retries,
                exc,
            )
            await asyncio.sleep(backoff * 2**attempt)
            attempt += 1


def _decision_table(decision: dict[str, Any]) -> Table:
    title = f"{decision['mode']} via {decision['method']} (confidence {decision['confidence']:.2f})"
    table = Table(title=title)
    table.add_column("Memory", justify="left")
    table.add_column("Role", justify="left")
    table.add_column("Tier", justify="left")
    table.add_column("Score", justify="right")
    table.add_column("Answer", justify="left")
    for mem in decision["memories"]:
        answer = mem["answer"].get("text") or json.dumps(mem["answer"])
        snip = answer[:60] + ("…" if len(answer) > 60 else "")
        table.add_row(mem["memoryId"], mem["role"], mem["tier"], f"{mem['score']:.2f}", snip)
    return table


URL_OPTION = typer.Option(
    DEFAULT_API,
    "--url",
    envvar=API_URL_ENV,
    show_default="env/localhost",
)

# ---------------------------------------------------------------------------

# Commands

# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Defaults to api.host from settings."),
    port: int | None = typer.Option(None, "--port", help="Defaults to api.port from settings."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Start the HTTP service (settings come from SURFACING_* variables)."""
    import uvicorn

    api = get_settings().api
    uvicorn.run(
        "surfacing_engine.api.app:create_app",
        factory=True,
        host=host or api.host,
        port=api.port if port is None else port,
        reload=reload,
    )


@app.command()
def evaluate(
    text: str = typer.Argument(..., help="What the user typed."),
    user: str = typer.Option(..., "--user", "-u", help="Directory user id."),
    platform: str | None = typer.Option(None, "--platform", "-p", help="slack, email, form, browser…"),
    metadata: str | None = typer.Option(
        None,
        "--metadata",
        callback=_metadata_option,
        help="Extra interaction metadata as JSON.",
    ),
    url: str = URL_OPTION,
    retry: int = typer.Option(0, "--retry", help="Retry attempts on connection failure."),
    raw: bool = typer.Option(False, "--json", help="Print the raw JSON decision."),
) -> None:
    """Ask a running engine whether to surface anything for TEXT."""

    async def _run_evaluate() -> None:
        async with _client(url) as client:
            payload: dict[str, Any] = {"rawInput": text, "userId": user, "metadata": metadata or {}}
            if platform is not None:
                payload["platform"] = platform
            rprint(f"[grey]POST {url}/api/v1/evaluate …")
            resp = await _request_with_retry(
                client, "POST", "/api/v1/evaluate", json=payload, retries=retry
            )
            resp.raise_for_status()
            decision = resp.json()

        if raw:
            rprint(json.dumps(decision, indent=2))
            return
        if not decision["shouldSurface"]:
            rprint(Panel("Nothing to surface", title=decision["contextFingerprint"]))
            return
        rprint(_decision_table(decision))
        for bridge in decision.get("bridges", []):
            shared = ", ".join(bridge["sharedWorkflows"]) or "reference"
            rprint(f"  {bridge['fromId']} → {bridge['toId']} [dim]({shared})")
        rprint(f"[dim]fingerprint {decision['contextFingerprint']}")

    run(_run_evaluate())


@app.command()
def feedback(
    memory_id: str = typer.Argument(..., help="Memory the user reacted to."),
    fingerprint: str = typer.Option(..., "--fingerprint", "-f", help="contextFingerprint of the decision."),
    user: str | None = typer.Option(
        None, "--user", "-u", help="Defaults to the user the fingerprint was issued to."
    ),
    outcome: Outcome = typer.Option(..., "--outcome", "-o", case_sensitive=False),
    event_id: str | None = typer.Option(
        None,
        "--event-id",
        help="Idempotency id; resubmitting the same id is a no-op.",
    ),
    url: str = URL_OPTION,
    retry: int = typer.Option(0, "--retry", help="Retry attempts on connection failure."),
) -> None:
    """Report how the user reacted to a surfaced memory."""

    async def _run_feedback() -> None:
        async with _client(url) as client:
            payload: dict[str, Any] = {
                "memoryId": memory_id,
                "contextFingerprint": fingerprint,
                "outcome": outcome.value,
            }
            if user is not None:
                payload["userId"] = user
            if event_id is not None:
                payload["eventId"] = event_id
            rprint(f"[grey]POST {url}/api/v1/feedback …")
            resp = await _request_with_retry(
                client, "POST", "/api/v1/feedback", json=payload, retries=retry
            )
            resp.raise_for_status()
            rprint(Panel(f"Feedback [bold green]{resp.json()['status']}"))

    run(_run_feedback())


@app.command("check-corpus")
def check_corpus(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
) -> None:
    """Validate a corpus file and summarise what it contains."""
    try:
        store, directory = load_corpus(path, HashingEmbedder())
    except CorpusError as exc:
        rprint(Panel(str(exc), title="Invalid corpus", style="bold red"))
        raise typer.Exit(1) from exc

    by_status = Counter(m.status.value for m in store.memories())
    by_dept = Counter(d for m in store.memories() for d in m.departments)
    rprint(f"[bold]{path.name}[/bold]: {len(store)} memories, {len(directory)} users")
    table = Table()
    table.add_column("Group", justify="left")
    table.add_column("Value", justify="left")
    table.add_column("Count", justify="right")
    for status, n in sorted(by_status.items()):
        table.add_row("status", status, str(n))
    for dept, n in sorted(by_dept.items()):
        table.add_row("department", dept, str(n))
    rprint(table)


if __name__ == "__main__":  # pragma: no cover
    app()
