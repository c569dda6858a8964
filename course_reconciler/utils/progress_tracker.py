"""
Progress Tracker Module

Wraps rich for a record-level progress bar across the runs of a batched
reconciliation.

Example Usage:
    tracker = ProgressTracker()
    tracker.start("Reconciling", total_records=250)
    tracker.update_batch(batch_num=1, total_batches=3)
    tracker.advance(100)
    tracker.complete()
"""

from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)


class ProgressTracker:
    """Progress bar over the records of a batched reconciliation."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()
        self.progress: Optional[Progress] = None
        self.task_id: Optional[TaskID] = None
        self.label = ""
        self.total_records = 0
        self.completed_records = 0

    def start(self, label: str, total_records: int) -> None:
        """Start a progress bar for ``total_records`` records."""
        self.label = label
        self.total_records = total_records
        self.completed_records = 0

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("({task.completed}/{task.total})"),
            TimeElapsedColumn(),
            console=self.console,
        )
        self.progress.start()
        self.task_id = self.progress.add_task(description=label, total=total_records)

    def update_batch(self, batch_num: int, total_batches: int) -> None:
        """Show which run of the batched reconciliation is in flight (1-indexed)."""
        if self.progress is None or self.task_id is None:
            return
        self.progress.update(
            self.task_id, description=f"{self.label} - Run {batch_num}/{total_batches}"
        )

    def advance(self, records: int) -> None:
        if self.progress is None or self.task_id is None:
            return
        self.completed_records += records
        self.progress.update(self.task_id, advance=records)

    def complete(self) -> None:
        """Stop the bar and print a one-line summary."""
        if self.progress is None or self.task_id is None:
            return

        self.progress.stop()
        self.console.print(
            f"[bold green]{self.label} complete:[/bold green] "
            f"{self.completed_records}/{self.total_records} records processed"
        )

        self.progress = None
        self.task_id = None

    def is_active(self) -> bool:
        return self.progress is not None
