"""Command-line interface for the notebook tree and its sync engine."""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Awaitable, Callable, Literal, Optional, TypeVar

import cyclopts
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .config import Settings
from .storage.exceptions import StorageError
from .sync.conflicts import ConflictSet
from .sync.engine import SyncEngine, SyncStatus
from .tree.models import AnyEntity, EntityKind, ExportBundle
from .tree.tree import MetadataTree, TreeError
from .workspace import Workspace, WorkspaceError, open_workspace

T = TypeVar("T")

app = cyclopts.App(
    name="cuaderno", help="Local-first notebooks with multi-device sync"
)


def _get_console() -> Console:
    return Console()


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _run(action: Callable[[Workspace], Awaitable[T]]) -> T:
    """Open the workspace, run ``action`` and flush before exiting."""
    settings = Settings()
    _configure_logging(settings)
    console = _get_console()

    async def runner() -> T:
        workspace = await open_workspace(settings)
        try:
            return await action(workspace)
        finally:
            await workspace.aclose()

    try:
        return asyncio.run(runner())
    except (TreeError, WorkspaceError, StorageError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)


def _require_engine(workspace: Workspace) -> SyncEngine:
    if workspace.engine is None:
        raise WorkspaceError(
            "No remote backend configured; set CUADERNO_REMOTE_BACKEND to s3 or drive"
        )
    return workspace.engine


def _label(entity: AnyEntity, active_ids: set[str]) -> Text:
    text = Text(entity.name or "(untitled)")
    if entity.id in active_ids:
        text.stylize("bold green")
    if entity.is_placeholder:
        text.stylize("dim")
    if entity.dirty:
        text.append(" *", style="yellow")
    text.append(f"  {entity.id[:8]} v{entity.version}", style="dim")
    return text


def _add_children(node: Tree, tree: MetadataTree, parent_id: str, active_ids: set[str]) -> None:
    for child in tree.children(parent_id):
        icon = "📁 " if child.kind is EntityKind.FOLDER else "📄 "
        branch = node.add(Text(icon) + _label(child, active_ids))
        if child.kind is EntityKind.FOLDER:
            _add_children(branch, tree, child.id, active_ids)


@app.command(name="tree")
def show_tree():
    """Show notebooks, folders and pages. Dirty entities are marked with *."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        tree = workspace.tree
        state = tree.active_state
        active_ids = {i for i in [state.notebook_id, state.page_id, *state.path] if i}

        root = Tree(Text("Cuaderno", style="bold cyan"))
        for notebook in tree.notebooks:
            branch = root.add(Text("📓 ") + _label(notebook, active_ids))
            _add_children(branch, tree, notebook.id, active_ids)
        console.print(root)

        if tree.tombstones:
            console.print(f"[dim]{len(tree.tombstones)} deleted ids tracked[/dim]")

    _run(action)


@app.command
def notebook(
    name: Annotated[str, cyclopts.Parameter(help="Notebook name")],
    *,
    color: Annotated[Optional[str], cyclopts.Parameter(help="Notebook color")] = None,
):
    """Create a notebook."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        created = workspace.tree.create_notebook(name, color=color)
        console.print(f"[green]✓ Created notebook {name!r}[/green] ({created.id})")

    _run(action)


@app.command
def folder(
    name: Annotated[str, cyclopts.Parameter(help="Folder name")],
    *,
    parent: Annotated[str, cyclopts.Parameter(help="Parent notebook or folder id")],
):
    """Create a folder inside a notebook or folder."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        created = workspace.tree.create_folder(name, parent)
        console.print(f"[green]✓ Created folder {name!r}[/green] ({created.id})")

    _run(action)


@app.command
def page(
    name: Annotated[str, cyclopts.Parameter(help="Page name")],
    *,
    parent: Annotated[str, cyclopts.Parameter(help="Parent notebook or folder id")],
):
    """Create an empty page inside a notebook or folder."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        created = workspace.tree.create_page(name, parent)
        console.print(f"[green]✓ Created page {name!r}[/green] ({created.id})")

    _run(action)


@app.command
def rename(
    entity_id: Annotated[str, cyclopts.Parameter(help="Entity id")],
    name: Annotated[str, cyclopts.Parameter(help="New name")],
):
    """Rename a notebook, folder or page."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        workspace.tree.rename(entity_id, name)
        console.print(f"[green]✓ Renamed {entity_id} to {name!r}[/green]")

    _run(action)


@app.command
def move(
    entity_id: Annotated[str, cyclopts.Parameter(help="Folder or page to move")],
    target: Annotated[str, cyclopts.Parameter(help="Target container or sibling id")],
    *,
    before: Annotated[
        bool, cyclopts.Parameter(help="Insert before TARGET instead of appending into it")
    ] = False,
):
    """Move a folder or page into a container, or before a sibling."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        workspace.tree.move(entity_id, target, as_append=not before)
        console.print(f"[green]✓ Moved {entity_id}[/green]")

    _run(action)


@app.command
def delete(
    entity_id: Annotated[str, cyclopts.Parameter(help="Entity id")],
    *,
    yes: Annotated[bool, cyclopts.Parameter(help="Do not ask for confirmation")] = False,
):
    """Delete an entity and everything below it."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        entity = workspace.tree.get(entity_id)
        if not yes and not Confirm.ask(
            f"Delete {entity.kind.value} {entity.name!r} and its contents?"
        ):
            console.print("[yellow]Cancelled[/yellow]")
            return
        deleted = workspace.tree.delete(entity_id)
        console.print(f"[green]✓ Deleted {len(deleted)} entities[/green]")

    _run(action)


@app.command
def reorder(
    entity_id: Annotated[str, cyclopts.Parameter(help="Entity being dragged")],
    over_id: Annotated[str, cyclopts.Parameter(help="Entity it was dropped on")],
):
    """Reorder notebooks, or place a folder/page before a sibling."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        workspace.tree.reorder(entity_id, over_id)
        console.print(f"[green]✓ Reordered {entity_id}[/green]")

    _run(action)


@app.command
def duplicate(
    entity_id: Annotated[str, cyclopts.Parameter(help="Entity to copy")],
):
    """Copy a notebook, folder or page with everything below it."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        copy = workspace.tree.duplicate(entity_id)
        console.print(f"[green]✓ Duplicated {copy.kind.value} {copy.name!r}[/green] ({copy.id})")

    _run(action)


@app.command(name="export")
def export_entity(
    entity_id: Annotated[str, cyclopts.Parameter(help="Entity to export")],
    *,
    output: Annotated[
        Optional[Path], cyclopts.Parameter(help="File to write (default: NAME.cua)")
    ] = None,
):
    """Export a notebook, folder or page with its page contents."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        bundle = await workspace.persistence.export_subtree(entity_id)
        root = bundle.root
        extension = "pag" if root.kind is EntityKind.PAGE else "cua"
        target = output or Path(f"{root.name or 'export'}.{extension}")
        target.write_bytes(bundle.to_bytes())
        console.print(
            f"[green]✓ Exported {len(bundle.manifest.entity_ids())} entities to {target}[/green]"
        )

    _run(action)


@app.command(name="import")
def import_entity(
    path: Annotated[Path, cyclopts.Parameter(help="File written by export")],
    *,
    parent: Annotated[
        Optional[str],
        cyclopts.Parameter(help="Container for an exported folder or page"),
    ] = None,
):
    """Import an exported notebook, folder or page under new ids."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        try:
            bundle = ExportBundle.from_bytes(path.read_bytes())
        except (OSError, EOFError, ValidationError) as e:
            raise WorkspaceError(f"{path} is not a readable export: {e}") from e
        root = workspace.tree.import_bundle(bundle, parent)
        console.print(f"[green]✓ Imported {root.kind.value} {root.name!r}[/green] ({root.id})")

    _run(action)


def _conflict_table(conflicts: ConflictSet) -> Table:
    table = Table(title="Sync Conflicts")
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Local", justify="right")
    table.add_column("Remote", justify="right")
    table.add_column("Remote author", style="dim")

    for item in conflicts.items:
        local = conflicts.local.find(item.id)
        remote = conflicts.remote.find(item.id)
        table.add_row(
            item.kind.value,
            (local or remote).name if (local or remote) else item.id,
            f"v{item.local_version}",
            f"v{item.remote_version}",
            remote.last_modifier[:8] if remote else "",
        )
    return table


@app.command
def sync(
    *,
    on_conflict: Annotated[
        Literal["prompt", "local", "remote"],
        cyclopts.Parameter(help="How to resolve conflicts"),
    ] = "prompt",
):
    """Run a manual sync pass."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        engine = _require_engine(workspace)
        with console.status("Syncing..."):
            outcome = await engine.sync(manual=True)
            if engine.pending_retry is not None:
                console.print("[yellow]Remote changed during sync, retrying...[/yellow]")
                await engine.pending_retry
                outcome = engine.last_outcome

        if engine.status is SyncStatus.ERROR:
            console.print(f"[red]Sync failed: {engine.error}[/red]")
            if engine.needs_reauthentication:
                console.print("[red]Sign in again to restore remote access.[/red]")
            raise SystemExit(1)

        if engine.status is SyncStatus.CONFLICT:
            console.print(_conflict_table(engine.conflicts))
            side = on_conflict
            if side == "prompt":
                side = Prompt.ask(
                    "Keep which version?", choices=["local", "remote"], default="local"
                )
            await engine.resolve_conflict(side)
            if engine.status is SyncStatus.ERROR:
                console.print(f"[red]{engine.error}[/red]")
                raise SystemExit(1)
            console.print(f"[green]✓ Conflicts resolved keeping {side}[/green]")
            return

        summary = Text.assemble(("✓ ", "green bold"), ("Sync complete\n\n", "green"))
        if outcome is not None:
            if outcome.initial_upload:
                summary.append("Initial upload of all local data\n", style="cyan")
            summary.append(f"Pulled: {len(outcome.pulled)}  ", style="cyan")
            summary.append(f"Pushed: {len(outcome.pushed)}", style="cyan")
        console.print(Panel(summary, title="Sync", border_style="green"))

    _run(action)


@app.command
def status():
    """Show sync status and pending local changes."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        table = Table(title="Cuaderno Status", show_header=False, box=None)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Value", style="white")

        table.add_row("Client id", workspace.client_id)
        table.add_row("Data dir", str(workspace.settings.resolved_data_dir))
        table.add_row("Remote", workspace.settings.remote_backend)

        summary = workspace.oplog.summary()
        last_sync = summary.last_activity
        table.add_row(
            "Last sync activity",
            last_sync.strftime("%Y-%m-%d %H:%M:%S %Z") if last_sync else "Never",
        )
        if workspace.engine is not None:
            table.add_row("Engine", workspace.engine.status.value)

        dirty = workspace.tree.dirty_entities()
        table.add_row("Pending changes", str(len(dirty)))
        for entity in dirty[:10]:
            table.add_row("", f"  • {entity.kind.value} {entity.name!r}")
        table.add_row("Logged operations", str(summary.total))
        table.add_row("Failed operations (24h)", str(summary.failures_last_day))
        console.print(table)

    _run(action)


@app.command
def log(
    *,
    limit: Annotated[int, cyclopts.Parameter(help="Number of entries to show")] = 20,
    entity: Annotated[
        Optional[str], cyclopts.Parameter(help="Only this entity id or id prefix")
    ] = None,
    failed: Annotated[bool, cyclopts.Parameter(help="Only failed operations")] = False,
):
    """Show recent sync operations."""
    console = _get_console()

    async def action(workspace: Workspace) -> None:
        operations = workspace.oplog.recent(limit, entity_id=entity, failed_only=failed)
        if not operations:
            console.print("[dim]No sync operations recorded[/dim]")
            return

        table = Table(title="Recent Sync Operations")
        table.add_column("Time", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("Entity")
        table.add_column("Status")
        table.add_column("Error", style="red")

        for op in operations:
            color = {"success": "green", "failed": "red"}.get(op.status, "yellow")
            table.add_row(
                op.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                op.op_type,
                f"{op.entity_kind or ''} {op.entity_id[:8]}".strip(),
                f"[{color}]{op.status}[/{color}]",
                op.error or "",
            )
        console.print(table)

    _run(action)


def main():
    app()
