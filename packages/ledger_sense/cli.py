# ruff: noqa: I001
"""CLI for the ``ledger_sense`` package.

Commands read a bill export (CSV or XLSX), print JSON to stdout and log to
stderr. ``classify`` and ``bootstrap`` run against in-memory repositories
seeded from a JSON state file (ledgers, committed history, rules). Model
settings come from ``LLM_*`` variables, loaded from a local ``.env`` first.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import ArgumentInfo, OptionInfo

from .cells import format_money
from .logging_setup import configure_logging
from .models import Transaction


def transaction_to_dict(txn: Transaction) -> dict[str, Any]:
    meta = txn.meta
    out: dict[str, Any] = {
        "day": txn.day,
        "flow_type": txn.flow_type,
        "money": format_money(txn.money),
        "name": txn.name,
        "description": txn.description,
        "industry_type": txn.industry_type,
        "pay_type": txn.pay_type,
        "goods": txn.goods,
        "account_name": txn.account_name,
        "attribution": txn.attribution,
        "row_index": meta.row_index,
        "selected": meta.selected,
    }
    if meta.pair_id:
        out["pair_id"] = meta.pair_id
        out["badge"] = meta.badge
        out["badge_type"] = meta.badge_type
    if meta.suggestion is not None:
        out["suggestion"] = meta.suggestion.as_dict()
    return out


def _dump(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Detect, parse and classify Chinese bill exports (Alipay, WeChat Pay, JD, "
        "Wacai or custom). Loads LLM_* settings from a local .env before running."
    ),
)

# Module-level argument/option objects to satisfy ruff B008.
FILE_ARGUMENT: ArgumentInfo = typer.Argument(
    ..., help="Bill export (.csv, .xlsx)", exists=True, dir_okay=False, readable=True
)
STATE_OPTION: OptionInfo = typer.Option(
    ...,
    "--state",
    help="JSON file with books, history, rules and account_names",
    exists=True,
    dir_okay=False,
    readable=True,
)


@app.command("detect")
def detect_cmd(path: Annotated[Path, FILE_ARGUMENT]) -> None:
    """Print the detected layout, header row and confidence."""

    from .formats import detect_layout, read_rows

    try:
        detection = detect_layout(read_rows(path))
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    _dump(
        {
            "layout": detection.layout,
            "header_row": detection.header_row,
            "confidence": round(detection.confidence, 4),
            "headers": dict(detection.headers),
        }
    )


@app.command("parse")
def parse_cmd(
    path: Annotated[Path, FILE_ARGUMENT],
    *,
    resolve: bool = typer.Option(True, help="Pair refunds and family-account rows."),
) -> None:
    """Parse a bill export and print the display set as JSON."""

    from .parsing import parse_file
    from .special_patterns import resolve_special_patterns

    try:
        result = parse_file(path)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    rows = result.transactions
    stats: dict[str, int] = {"total": len(rows)}
    if resolve:
        resolved = resolve_special_patterns(rows)
        rows, stats = resolved.display, resolved.stats
    _dump(
        {
            "layout": result.detection.layout,
            "stats": stats,
            "issues": [{"row_index": i.row_index, "message": i.message} for i in result.issues],
            "transactions": [transaction_to_dict(t) for t in rows],
        }
    )


@app.command("classify")
def classify_cmd(
    path: Annotated[Path, FILE_ARGUMENT],
    state: Annotated[Path, STATE_OPTION],
    *,
    mode: str = typer.Option("both", help="ledger-only, category-only or both"),
    match_mode: str = typer.Option(
        "history-first", help="history-first, history-only or model-only"
    ),
    user_id: int = typer.Option(0, help="User id the state file is loaded under."),
    dictionary: Path | None = typer.Option(
        None, help="Category dictionary JSON (falls back to LEDGER_SENSE_DICTIONARY_PATH)."
    ),
) -> None:
    """Parse, resolve special patterns and classify the selected rows."""

    from .dictionary import CategoryDictionary
    from .parsing import parse_file
    from .pipeline import ClassifyMode, ClassifyRequest, MatchMode, PipelineCoordinator
    from .repositories import load_state
    from .settings import dictionary_path, load_llm_settings
    from .special_patterns import resolve_special_patterns

    try:
        request_mode = ClassifyMode(mode)
        request_match = MatchMode(match_mode)
        repos = load_state(state, user_id=user_id)
        parsed = parse_file(path)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    display = resolve_special_patterns(parsed.transactions).display
    selected = [t for t in display if t.meta.selected]
    coordinator = PipelineCoordinator(
        repos,
        settings=load_llm_settings(),
        dictionary=CategoryDictionary.from_path(dictionary or dictionary_path()),
    )
    result = coordinator.run(
        ClassifyRequest(
            user_id=user_id,
            transactions=selected,
            mode=request_mode,
            match_mode=request_match,
        )
    )
    _dump(
        {
            "success": result.success,
            "message": result.message,
            "counters": result.counters,
            "progress": result.progress.as_dict() if result.progress else None,
            "transactions": [transaction_to_dict(t) for t in result.transactions],
        }
    )
    if not result.success:
        raise typer.Exit(1)


@app.command("bootstrap")
def bootstrap_cmd(
    state: Annotated[Path, STATE_OPTION],
    *,
    user_id: int = typer.Option(0, help="User id the state file is loaded under."),
    force: bool = typer.Option(False, help="Run even when the user already has rules."),
) -> None:
    """Mine initial rules from the state file's history and print them."""

    from .repositories import load_state
    from .rules.bootstrap import RuleBootstrapper

    try:
        repos = load_state(state, user_id=user_id)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    result = RuleBootstrapper(repos.rules, repos.history).bootstrap(user_id, force=force)
    _dump(
        {
            "created": result.created,
            "attempted": result.attempted,
            "skipped_reason": result.skipped_reason,
            "rules": [
                {
                    "id": r.id,
                    "name": r.name,
                    "rule_type": str(r.rule_type),
                    "target_book_id": r.target_book_id,
                    "target_category": r.target_category,
                    "priority": r.priority,
                }
                for r in repos.rules.list_rules(user_id, enabled_only=False)
            ],
        }
    )


@app.callback()
def _root(
    log_level: str | None = typer.Option(
        None, help="Override LEDGER_SENSE_LOG_LEVEL (DEBUG, INFO, ...)."
    ),
) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


if __name__ == "__main__":  # pragma: no cover
    app()
