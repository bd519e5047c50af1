"""Rich progress display for batch uploads.

Two tiers: overall progress across the batch, and progress within the
current chunk.  The status column shows the latest item and the circuit
breaker state.
"""

from __future__ import annotations

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)


class UploadProgressTracker:
    """Two-tier Rich progress tracker.

    Implements the progress callbacks the batch coordinator calls.

    Usage::

        tracker = UploadProgressTracker(total_items=120, total_chunks=12)
        with tracker:
            await coordinator.submit(requests, progress=tracker)
    """

    def __init__(self, total_items: int, total_chunks: int) -> None:
        self._total_items = total_items
        self._total_chunks = total_chunks

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeRemainingColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )

        self._batch_task: TaskID | None = None
        self._chunk_task: TaskID | None = None

        self._stats: dict[str, int] = {
            "succeeded": 0,
            "failed": 0,
            "unverified": 0,
        }

    def start(self) -> None:
        self._progress.start()
        self._batch_task = self._progress.add_task(
            "[green]Batch",
            total=self._total_items,
            status="starting...",
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> UploadProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Chunk tracking
    # ------------------------------------------------------------------

    def start_chunk(self, chunk_number: int, chunk_size: int) -> None:
        """Create a chunk-level task, hiding the previous one."""
        if self._chunk_task is not None:
            self._progress.update(self._chunk_task, visible=False)

        self._chunk_task = self._progress.add_task(
            f"[blue]Chunk {chunk_number}",
            total=chunk_size,
            status="uploading",
        )
        if self._batch_task is not None:
            self._progress.update(
                self._batch_task,
                status=f"chunk {chunk_number}/{self._total_chunks}",
            )

    def complete_chunk(self, chunk_number: int) -> None:
        if self._chunk_task is not None:
            self._progress.update(self._chunk_task, status=f"chunk {chunk_number} done")

    # ------------------------------------------------------------------
    # Item events
    # ------------------------------------------------------------------

    def item_succeeded(self, name: str) -> None:
        self._stats["succeeded"] += 1
        self._advance(_truncate(name))

    def item_failed(self, name: str, error: str) -> None:
        self._stats["failed"] += 1
        self._advance(f"[red]FAIL[/red] {_truncate(name)}")

    def item_unverified(self, name: str) -> None:
        """Uploaded but provenance could not be attached (no advance)."""
        self._stats["unverified"] += 1
        if self._batch_task is not None:
            self._progress.update(
                self._batch_task,
                status=f"[yellow]UNVERIFIED[/yellow] {_truncate(name)}",
            )

    def update_circuit_state(self, state: str, concurrency: int) -> None:
        if self._batch_task is not None:
            self._progress.update(
                self._batch_task,
                status=f"circuit={state} concurrency={concurrency}",
            )

    def _advance(self, status: str) -> None:
        for task in (self._batch_task, self._chunk_task):
            if task is not None:
                self._progress.advance(task, 1)
                self._progress.update(task, status=status)

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the current statistics."""
        return dict(self._stats)


def _truncate(name: str, max_len: int = 40) -> str:
    """Shorten a name for display, keeping its end."""
    if len(name) <= max_len:
        return name
    return "..." + name[-(max_len - 3) :]
