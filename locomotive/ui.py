"""Console output for the end of a run and for the utility commands."""
from typing import Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .database import QueueItem
from .transfer_types import RunContext


def truncate_name(text: str, max_width: int = 60) -> str:
    """Shortens long names by cutting out the middle."""
    if len(text) <= max_width:
        return text
    keep = max_width - 3
    head = keep // 2 + keep % 2
    return f"{text[:head]}...{text[-(keep // 2):]}" if keep // 2 else text[:max_width]


def format_bytes(num: Optional[int]) -> str:
    if num is None:
        return "-"
    size = float(num)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def _status(item: QueueItem) -> str:
    if item.is_moved:
        return "[green]moved[/]"
    if item.is_finished:
        return "[green]finished[/]"
    if item.is_failed:
        return f"[red]failed ({item.retries})[/]"
    return "[yellow]transferring[/]"


def print_run_summary(ctx: RunContext, console: Optional[Console] = None) -> None:
    """Prints the items started and moved by this run."""
    console = console or Console()

    stats_table = Table.grid(padding=(0, 1))
    stats_table.add_column(style="bold cyan", justify="right", no_wrap=True)
    stats_table.add_column()
    stats_table.add_row("In lftp queue:", str(ctx.queue_count))
    stats_table.add_row("Started:", str(len(ctx.new_transfers)))
    stats_table.add_row("Moved:", str(len(ctx.moved_items)))
    if ctx.cleaned_items:
        stats_table.add_row("Sources removed:", str(len(ctx.cleaned_items)))
    for message in ctx.messages:
        stats_table.add_row("Note:", message)
    console.print(Panel(stats_table, title="[bold cyan]Locomotive run", border_style="dim"))

    if ctx.new_transfers:
        started = Table(title="New transfers", title_style="bold", show_header=True, header_style="bold")
        started.add_column("Name")
        started.add_column("Source")
        started.add_column("Type", no_wrap=True)
        for item in ctx.new_transfers:
            started.add_row(truncate_name(item.name), item.source_dir, "dir" if item.is_dir else "file")
        console.print(started)

    if ctx.moved_items:
        moved = Table(title="Moved to target", title_style="bold green", show_header=False)
        moved.add_column()
        for name in ctx.moved_items:
            moved.add_row(f"✓ {truncate_name(name)}")
        console.print(moved)


def print_queue_table(items: Sequence[QueueItem], console: Optional[Console] = None) -> None:
    """Prints every live row of the local queue."""
    console = console or Console()
    if not items:
        console.print("The local queue is empty.")
        return
    table = Table(title="Local queue", show_header=True, header_style="bold")
    table.add_column("Fingerprint", style="dim", no_wrap=True)
    table.add_column("Name")
    table.add_column("Size", justify="right", no_wrap=True)
    table.add_column("Files", justify="right")
    table.add_column("Target")
    table.add_column("Status", no_wrap=True)
    for item in items:
        table.add_row(
            item.fingerprint,
            truncate_name(item.name, 40),
            format_bytes(item.size_bytes),
            str(item.file_count if item.file_count is not None else "-"),
            item.target_dir or "-",
            _status(item),
        )
    console.print(table)
