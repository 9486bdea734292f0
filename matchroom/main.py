from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.logging import RichHandler
from rich.table import Table

from .config import RoomContext, RoomSettings
from .ingest import load_roster_csv
from .outcomes import OutcomeAnalyzer
from .recorder import CsvPersistenceSink, OutcomeRecorder
from .room import Room
from .scoring import LocalCompatibilityScorer, OpenAIReasoningService, build_scorer


app = typer.Typer(help="Speed-networking match room CLI")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.command()
def score(
    csv_path: Path = typer.Argument(..., help="Attendee CSV"),
    user_a: str = typer.Argument(..., help="First user id"),
    user_b: str = typer.Argument(..., help="Second user id"),
    ai: bool = typer.Option(False, "--ai/--no-ai", help="Ask the reasoning service first, fall back locally"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Score one pair of attendees and show the rationale."""
    _configure_logging(verbose)
    settings = RoomSettings.from_env()
    store, _ = load_roster_csv(csv_path)

    async def _run():
        a = await store.get_profile(user_a)
        b = await store.get_profile(user_b)
        reasoning = OpenAIReasoningService(model=settings.openai_model) if ai else None
        scorer = build_scorer(settings, reasoning)
        return a, b, await scorer.score(a, b)

    a, b, result = asyncio.run(_run())
    table = Table("field", "value", title=f"{a.display_name} ↔ {b.display_name}")
    table.add_row("score", f"{result.score:.1f}")
    table.add_row("source", result.source)
    table.add_row("rationale", result.rationale)
    table.add_row("strengths", "\n".join(result.strengths) or "-")
    table.add_row("opportunities", "\n".join(result.opportunities) or "-")
    table.add_row("conversation starters", "\n".join(result.conversation_starters) or "-")
    print(table)


@app.command()
def simulate(
    csv_path: Path = typer.Argument(..., help="Attendee CSV (optionally with an event_id column)"),
    event_id: str = typer.Option("default", help="Event to run"),
    seconds: float = typer.Option(10.0, help="Wall-clock seconds to keep the room open"),
    duration: int = typer.Option(30, help="Session length in ticks"),
    tick: float = typer.Option(0.05, help="Seconds per countdown tick"),
    rematch_delay: float = typer.Option(0.1, help="Pause before partners search again"),
    ai: bool = typer.Option(False, "--ai/--no-ai", help="Use the reasoning service for scoring"),
    out_dir: Optional[Path] = typer.Option(None, help="Mirror match/connection records to CSVs here"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run a time-compressed room over the roster and report the pairings."""
    _configure_logging(verbose)
    settings = RoomSettings.from_env().with_overrides(
        session_seconds=duration,
        tick_seconds=tick,
        rematch_delay=rematch_delay,
        search_poll=tick,
    )
    store, roster = load_roster_csv(csv_path, event_id=event_id)
    sink = CsvPersistenceSink(out_dir) if out_dir else None
    recorder = OutcomeRecorder(sink, retries=settings.persist_retries, backoff=settings.retry_backoff)
    reasoning = OpenAIReasoningService(model=settings.openai_model) if ai else None
    scorer = build_scorer(settings, reasoning) if ai else LocalCompatibilityScorer()

    async def _run() -> Room:
        analyzer = OutcomeAnalyzer(reasoning, timeout=settings.scorer_timeout)
        room = Room(
            RoomContext(event_id=event_id, settings=settings), store, scorer, recorder, roster=roster, analyzer=analyzer
        )
        await room.sync_roster()
        print(f"[green]Room {event_id} open with {len(room.pool)} participants[/green]")
        await asyncio.sleep(seconds)
        await room.close()
        return room

    room = asyncio.run(_run())
    df = room.recorder.to_frame()
    table = Table("user1", "user2", "score", "status", "seconds", "connected", title=f"Matches for {event_id}")
    for _, r in df.iterrows():
        table.add_row(
            str(r["user1_id"]),
            str(r["user2_id"]),
            f"{float(r['compatibility_score']):.1f}",
            str(r["status"]),
            str(r["duration_seconds"]),
            "yes" if r["connection_approved"] else "no",
        )
    print(table)
    summary = room.recorder.summarize()
    print(
        f"[bold]{summary['total_matches']} matches[/bold], "
        f"avg score {summary['average_compatibility_score']:.1f}, "
        f"{summary['failed_writes']} failed writes"
    )
    if out_dir:
        print(f"[green]Saved records to[/green] {out_dir}")


if __name__ == "__main__":
    app()
