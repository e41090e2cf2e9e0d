"""Command-line interface for sheetbook workspaces."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from sheetbook import __version__
from sheetbook.errors import SheetbookError


@click.group()
@click.version_option(version=__version__, prog_name="sheetbook")
def main() -> None:
    """sheetbook -- local-first spreadsheet workspaces stored as JSON.

    Lifecycle: Load -> Check -> Repair -> Edit -> Save
    """


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _open(workspace: str, **kwargs: object):
    from sheetbook.service import WorkspaceService

    try:
        return WorkspaceService(Path(workspace), **kwargs)
    except (FileNotFoundError, SheetbookError) as e:
        raise click.ClickException(str(e))


def _parse_decisions(items: tuple[str, ...]) -> dict[str, str]:
    decisions: dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise click.ClickException(
                f"Invalid --decision format: {item!r}. Use ISSUE_ID=DECISION."
            )
        issue_id, decision = item.rsplit("=", 1)
        decisions[issue_id] = decision
    return decisions


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def init(directory: str) -> None:
    """Scaffold a sample workspace at DIRECTORY."""
    from sheetbook.jsonstore import scaffold_workspace

    try:
        path = scaffold_workspace(Path(directory))
    except SheetbookError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created workspace at {path}")


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


@main.command()
@click.argument("workspace", type=click.Path(exists=True))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def check(workspace: str, as_json: bool) -> None:
    """Detect drift between WORKSPACE's index and its book files.

    Exits with status 1 when error-severity issues are found.
    """
    service = _open(workspace)
    issues = service.issues

    if as_json:
        out = {
            "summary": service.summary(),
            "issues": [issue.model_dump(mode="json") for issue in issues],
        }
        click.echo(json.dumps(out, indent=2))
    elif not issues:
        click.echo("No integrity issues found.")
    else:
        for issue in issues:
            decisions = ", ".join(d.value for d in issue.supported_decisions)
            click.echo(f"{issue.severity.value.upper():7s} {issue.id}")
            click.echo(f"        {issue.message}")
            click.echo(f"        decisions: {decisions}")

    if service.blocked:
        sys.exit(1)


@main.command()
@click.argument("workspace", type=click.Path(exists=True))
@click.option("--decision", "decision_items", multiple=True, help="Repair choice as ISSUE_ID=DECISION.")
@click.option("--auto", "auto", is_flag=True, help="Apply the recommended repair to every issue.")
def repair(workspace: str, decision_items: tuple[str, ...], auto: bool) -> None:
    """Apply repairs to WORKSPACE and save the result."""
    from sheetbook.integrity import recommended_decisions

    service = _open(workspace)
    if not service.issues:
        click.echo("No integrity issues found.")
        return

    decisions: dict[str, str] = {}
    if auto:
        decisions.update({k: v.value for k, v in recommended_decisions(service.issues).items()})
    decisions.update(_parse_decisions(decision_items))
    if not decisions:
        raise click.ClickException("Nothing to do: pass --decision ISSUE_ID=DECISION or --auto.")

    try:
        result = service.resolve(decisions)
        service.save()
    except SheetbookError as e:
        raise click.ClickException(str(e))

    click.echo(f"Resolved {len(result.resolved_issue_ids)} issue(s).")
    for old, new in result.book_id_replacements.items():
        click.echo(f"  book id {old} -> {new}")
    if service.issues:
        click.echo(f"{len(service.issues)} issue(s) remain.")


# ---------------------------------------------------------------------------
# Books and cells
# ---------------------------------------------------------------------------


@main.command()
@click.argument("workspace", type=click.Path(exists=True))
def books(workspace: str) -> None:
    """List the books in WORKSPACE."""
    service = _open(workspace)
    refs = service.snapshot.workspace.data.books
    if not refs:
        click.echo("No books found.")
        return
    for ref in refs:
        entry = service.snapshot.find_book(ref.id)
        sheets = len(entry.data.sheets) if entry is not None else 0
        folder = ref.folder_id or "-"
        click.echo(f"  {ref.id:24s} {ref.name:30s} folder={folder} order={ref.order} sheets={sheets}")


@main.command("new-book")
@click.argument("workspace", type=click.Path(exists=True))
@click.option("--name", default=None, help="Book name (default: unique 'New Book').")
def new_book(workspace: str, name: str | None) -> None:
    """Create a book with one empty sheet in WORKSPACE."""
    service = _open(workspace)
    try:
        service.store.create_book(name)
        service.save()
    except SheetbookError as e:
        raise click.ClickException(str(e))
    selection = service.store.selection
    click.echo(f"Created book {selection.book_id} (sheet {selection.sheet_id})")


@main.command("set-cell")
@click.argument("workspace", type=click.Path(exists=True))
@click.argument("book_id")
@click.argument("sheet_id")
@click.argument("addr")
@click.argument("value")
def set_cell(workspace: str, book_id: str, sheet_id: str, addr: str, value: str) -> None:
    """Write VALUE to cell ADDR (e.g. B3) and save.  An empty VALUE clears it."""
    from sheetbook.grid import index_to_col_letter, parse_addr
    from sheetbook.store import CellUpdate

    try:
        row, col = parse_addr(addr)
    except ValueError as e:
        raise click.ClickException(str(e))

    service = _open(workspace)
    update = CellUpdate(row_key=str(row + 1), column_key=index_to_col_letter(col), raw_value=value)
    try:
        result = service.store.apply_cell_updates([update], book_id=book_id, sheet_id=sheet_id)
        if result is None:
            click.echo("No change.")
            return
        service.save()
    except (SheetbookError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Set {addr.strip().upper()} in {book_id}/{sheet_id}")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@click.argument("workspace", type=click.Path(exists=True))
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--book-id", default=None, help="Filter by book ID.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    workspace: str,
    level: str | None,
    event_type: str | None,
    book_id: str | None,
    limit: int,
) -> None:
    """Show the structured event log for WORKSPACE."""
    from sheetbook.logging.sink import EventSink

    workspace_dir = Path(workspace)
    if workspace_dir.is_file():
        workspace_dir = workspace_dir.parent
    sink = EventSink(workspace_dir)
    events = sink.read_events(level=level, event_type=event_type, book_id=book_id, limit=limit)

    if not events:
        click.echo("No events found.")
        return

    for evt in events:
        ts = evt.get("ts", "")
        lvl = evt.get("level", "").upper()
        etype = evt.get("event_type", "")
        msg = evt.get("message", "")
        err = evt.get("error_code")
        line = f"[{ts}] {lvl:7s} {etype}: {msg}"
        if err:
            line += f"  ({err})"
        click.echo(line)
