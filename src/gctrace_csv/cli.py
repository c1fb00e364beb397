#!/usr/bin/env python3
"""gctrace-csv v1.0 - Go GC trace to CSV exporter.

Streams ``GODEBUG=gctrace=1`` output into a durable CSV table:
- One fixed gctrace line grammar (clock, cpu, heap, stacks, globals, procs)
- Immutable, typed records (Pydantic)
- Header deferred until the first matching line
- Flush + fsync after every row, so acknowledged rows survive a crash
- Rich diagnostics on stderr, CSV on a file or stdout

Typical use::

    GODEBUG=gctrace=1 ./server 2>&1 | gctrace-csv convert --csv gc.csv
"""

from __future__ import annotations

import csv
import io
import os
import re
import stat
import sys
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import IO, Annotated, TypeAlias

import typer
from pydantic import BaseModel, ConfigDict
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

__version__ = "1.0.0"

# ============================================================
# TYPE ALIASES
# ============================================================

SecondsValue: TypeAlias = float
PercentageValue: TypeAlias = float
MillisecondsValue: TypeAlias = float
MegabytesValue: TypeAlias = int
ConversionErrorHandler: TypeAlias = Callable[[str, str], None]

# ============================================================
# ERRORS
# ============================================================


class GCTraceError(Exception):
    """Base class for conditions that terminate a conversion run."""


class PatternCompileError(GCTraceError):
    """The gctrace grammar failed to compile."""


class SinkError(GCTraceError):
    """Creating, writing, flushing, syncing or closing the CSV destination failed."""


class InputReadError(GCTraceError):
    """Reading from the line source failed."""


class FieldConversionError(GCTraceError):
    """A captured field could not be converted to its numeric type (strict mode)."""

    def __init__(self, field_name: str, raw_text: str, line: str) -> None:
        super().__init__(f"cannot convert {field_name}={raw_text!r} in line: {line}")
        self.field_name = field_name
        self.raw_text = raw_text
        self.line = line


# ============================================================
# PYDANTIC MODELS
# ============================================================

# (model field, CSV column) in grammar capture order.
CSV_COLUMNS: tuple[tuple[str, str], ...] = (
    ("gc_num", "GCNum"),
    ("timestamp_seconds", "Timestamp"),
    ("cpu_percent", "CPUPercent"),
    ("wall_stw_write_barrier_ms", "WallSTWWriteBarrier"),
    ("wall_concurrent_ms", "WallConcurrent"),
    ("wall_stw_mark_term_ms", "WallSTWMarkTerm"),
    ("cpu_stw_write_barrier_ms", "CPUSTWWriteBarrier"),
    ("cpu_mark_assist_ms", "CPUMarkAssist"),
    ("cpu_mark_background_ms", "CPUMarkBackground"),
    ("cpu_mark_idle_ms", "CPUMarkIdle"),
    ("cpu_stw_mark_term_ms", "CPUSTWMarkTerm"),
    ("heap_in_use_before_mb", "HeapInUseBefore"),
    ("heap_in_use_after_mb", "HeapInUseAfter"),
    ("heap_marked_live_mb", "HeapMarkedLive"),
    ("heap_goal_mb", "HeapGoal"),
    ("stacks_mb", "StacksMB"),
    ("globals_mb", "GlobalsMB"),
    ("num_procs", "NumProcs"),
)

INTEGER_FIELDS: frozenset[str] = frozenset(
    {
        "gc_num",
        "heap_in_use_before_mb",
        "heap_in_use_after_mb",
        "heap_marked_live_mb",
        "heap_goal_mb",
        "stacks_mb",
        "globals_mb",
        "num_procs",
    }
)


class GCTraceRecord(BaseModel):
    """One completed GC cycle, as reported by a single gctrace line."""

    model_config = ConfigDict(frozen=True)

    gc_num: int
    timestamp_seconds: SecondsValue
    cpu_percent: PercentageValue

    # Wall-clock phases
    wall_stw_write_barrier_ms: MillisecondsValue
    wall_concurrent_ms: MillisecondsValue
    wall_stw_mark_term_ms: MillisecondsValue

    # CPU-time phases
    cpu_stw_write_barrier_ms: MillisecondsValue
    cpu_mark_assist_ms: MillisecondsValue
    cpu_mark_background_ms: MillisecondsValue
    cpu_mark_idle_ms: MillisecondsValue
    cpu_stw_mark_term_ms: MillisecondsValue

    # Memory
    heap_in_use_before_mb: MegabytesValue
    heap_in_use_after_mb: MegabytesValue
    heap_marked_live_mb: MegabytesValue
    heap_goal_mb: MegabytesValue
    stacks_mb: MegabytesValue
    globals_mb: MegabytesValue

    num_procs: int

    @staticmethod
    def csv_header() -> list[str]:
        """Return the fixed CSV column names."""
        return [column for _, column in CSV_COLUMNS]

    def to_csv_row(self) -> list[str]:
        """Serialize fields in column order."""
        row: list[str] = []
        for field_name, _ in CSV_COLUMNS:
            value = getattr(self, field_name)
            row.append(format_float(value) if isinstance(value, float) else str(value))
        return row


class NonMatch(BaseModel):
    """A line that does not follow the gctrace grammar."""

    model_config = ConfigDict(frozen=True)

    line: str


class ConvertSettings(BaseModel):
    """Options for a single conversion run."""

    destination: str = "data.csv"
    input_path: Path | None = None
    strict: bool = False
    report_non_matching: bool = True
    verbose: bool = False


class StreamState(str, Enum):
    AWAITING_FIRST_MATCH = "AwaitingFirstMatch"
    STREAMING = "Streaming"
    TERMINATED = "Terminated"


class ConversionStats(BaseModel):
    """Counters collected by the driving loop."""

    lines_read: int = 0
    rows_written: int = 0
    lines_skipped: int = 0
    conversion_anomalies: int = 0
    state: StreamState = StreamState.AWAITING_FIRST_MATCH
    destination: str = ""


def format_float(value: float) -> str:
    """Format a float as its shortest round-trip decimal, never in exponent form.

    ``3.0`` becomes ``"3"``, ``1e-05`` becomes ``"0.00001"``.
    """
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


# ============================================================
# GCTRACE PARSER
# ============================================================


class GCTraceParser:
    """Parser for Go runtime ``gctrace=1`` lines.

    Line format (Go 1.19+)::

        gc 2553 @8.452s 14%: 0.004+0.33+0.051 ms clock,
        0.056+0.12/0.56/0.94+0.61 ms cpu, 4->4->2 MB, 5 MB goal,
        0 MB stacks, 0 MB globals, 12 P

    ``gc 2553``: cycle number. ``@8.452s``: seconds since program start.
    ``14%``: share of CPU spent in GC so far.

    Wall clock: STW sweep termination / write barrier setup, concurrent mark,
    STW mark termination.

    CPU time: STW write barrier, mark assist, mark background, mark idle,
    STW mark termination.

    Memory: heap in use before mark, after mark, marked live; heap goal;
    stacks and globals scanned. ``12 P``: processors used.
    """

    PATTERN_SOURCE: str = (
        r"gc\s+(?P<gc_num>\d+)\s+"
        r"@(?P<timestamp_seconds>[\d.]+)s\s+"
        r"(?P<cpu_percent>[\d.]+)%:\s+"
        r"(?P<wall_stw_write_barrier_ms>[\d.]+)\+"
        r"(?P<wall_concurrent_ms>[\d.]+)\+"
        r"(?P<wall_stw_mark_term_ms>[\d.]+)\s+ms\s+clock,\s+"
        r"(?P<cpu_stw_write_barrier_ms>[\d.]+)\+"
        r"(?P<cpu_mark_assist_ms>[\d.]+)/"
        r"(?P<cpu_mark_background_ms>[\d.]+)/"
        r"(?P<cpu_mark_idle_ms>[\d.]+)\+"
        r"(?P<cpu_stw_mark_term_ms>[\d.]+)\s+ms\s+cpu,\s+"
        r"(?P<heap_in_use_before_mb>\d+)->"
        r"(?P<heap_in_use_after_mb>\d+)->"
        r"(?P<heap_marked_live_mb>\d+)\s+MB,\s+"
        r"(?P<heap_goal_mb>\d+)\s+MB\s+goal,\s+"
        r"(?P<stacks_mb>\d+)\s+MB\s+stacks,\s+"
        r"(?P<globals_mb>\d+)\s+MB\s+globals,\s+"
        r"(?P<num_procs>\d+)\s+P"
    )

    def __init__(self, pattern_source: str | None = None) -> None:
        source = self.PATTERN_SOURCE if pattern_source is None else pattern_source
        try:
            self.pattern: re.Pattern[str] = re.compile(source, re.ASCII)
        except re.error as e:
            raise PatternCompileError(f"gctrace pattern failed to compile: {e}") from e

    def parse(
        self, line: str, on_conversion_error: ConversionErrorHandler | None = None
    ) -> GCTraceRecord | NonMatch:
        """Parse one line into a record, or NonMatch if it is not gctrace output.

        A capture that fails numeric conversion (``1.2.3`` fits ``[\\d.]+``)
        becomes 0 and is passed to ``on_conversion_error(field, text)``.
        """
        # Substring guard: only run regex if "gc" present
        if "gc" not in line or not (match := self.pattern.search(line)):
            return NonMatch(line=line)

        values: dict[str, int | float] = {}
        for field_name, raw_text in match.groupdict().items():
            values[field_name] = self._convert(field_name, raw_text, on_conversion_error)
        return GCTraceRecord(**values)

    @staticmethod
    def _convert(
        field_name: str, raw_text: str, on_conversion_error: ConversionErrorHandler | None
    ) -> int | float:
        converter = int if field_name in INTEGER_FIELDS else float
        try:
            return converter(raw_text)
        except ValueError:
            if on_conversion_error is not None:
                on_conversion_error(field_name, raw_text)
            return converter()


# ============================================================
# CSV RECORD SINK
# ============================================================


class CSVRecordSink:
    """Append-only CSV destination with a durability barrier after every row.

    Each row is serialized, appended, flushed and fsync'ed before
    ``write_record`` returns. The header is written lazily, just before the
    first row, so a run with no matching lines leaves an empty file.
    """

    STDOUT_DESTINATION: str = "-"

    def __init__(self, destination: str | Path) -> None:
        self.destination = str(destination)
        self.header_written = False
        self.rows_written = 0
        self._handle: IO[str] | None = None
        self._writer = None
        self._owns_handle = False
        self._sync_to_disk = False

    @property
    def is_stdout(self) -> bool:
        return self.destination == self.STDOUT_DESTINATION

    def __enter__(self) -> CSVRecordSink:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        if not isinstance(exc, GCTraceError):
            self.close()
            return
        # Closing re-flushes whatever the failed step left buffered; keep the
        # original error and only report the close failure.
        try:
            self.close()
        except SinkError as close_error:
            console.print(f"[warning]WARNING: {escape(str(close_error))}[/warning]", soft_wrap=True)

    def open(self) -> CSVRecordSink:
        """Create (or truncate) the destination and take ownership of it."""
        if self._handle is not None:
            raise SinkError(f"CSV destination {self.destination} is already open")

        if self.is_stdout:
            self._handle = sys.stdout
            self._owns_handle = False
            self._sync_to_disk = False
        else:
            try:
                handle = open(self.destination, "w", newline="", encoding="utf-8")
            except OSError as e:
                raise SinkError(f"Error creating CSV file {self.destination}: {e}") from e
            self._handle = handle
            self._owns_handle = True
            try:
                # Pipes and character devices cannot be fsync'ed
                self._sync_to_disk = stat.S_ISREG(os.fstat(handle.fileno()).st_mode)
            except OSError as e:
                self.close()
                raise SinkError(f"Error inspecting CSV file {self.destination}: {e}") from e

        self._writer = csv.writer(self._handle, lineterminator="\n")
        return self

    def write_header(self) -> None:
        """Write the column header once; later calls are no-ops."""
        if self.header_written:
            return
        self._write_durably(GCTraceRecord.csv_header(), "header")
        self.header_written = True

    def write_record(self, record: GCTraceRecord) -> None:
        """Append one record and force it to stable storage."""
        self.write_header()
        self._write_durably(record.to_csv_row(), "row")
        self.rows_written += 1

    def close(self) -> None:
        """Release the destination. Safe to call more than once."""
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        self._writer = None
        try:
            if self._owns_handle:
                handle.close()
            else:
                handle.flush()
        except OSError as e:
            raise SinkError(f"Error closing CSV file {self.destination}: {e}") from e

    def _write_durably(self, row: list[str], what: str) -> None:
        if self._handle is None or self._writer is None:
            raise SinkError(f"CSV destination {self.destination} is not open")

        try:
            self._writer.writerow(row)
        except (OSError, csv.Error) as e:
            raise SinkError(f"Error writing CSV {what}: {e}") from e

        try:
            self._handle.flush()
        except OSError as e:
            raise SinkError(f"Error flushing CSV {what}: {e}") from e

        if self._sync_to_disk:
            try:
                os.fsync(self._handle.fileno())
            except OSError as e:
                raise SinkError(f"Error syncing CSV file {self.destination}: {e}") from e


# ============================================================
# DRIVING LOOP
# ============================================================


@contextmanager
def open_line_source(input_path: Path | None) -> Iterator[Iterable[str]]:
    """Yield the input lines: a file when given, standard input otherwise.

    Undecodable bytes become U+FFFD, so mixed program output only ever
    produces non-matching lines.
    """
    if input_path is None:
        # Only allowed before the first read, which is always the case here
        if isinstance(sys.stdin, io.TextIOWrapper):
            sys.stdin.reconfigure(errors="replace")
        yield sys.stdin
        return

    try:
        handle = input_path.open(encoding="utf-8", errors="replace")
    except OSError as e:
        raise InputReadError(f"Error opening input {input_path}: {e}") from e
    with handle:
        yield handle


def report_non_matching(console: Console, outcome: NonMatch) -> None:
    console.print(f"[label]Not Matching:[/label] {escape(outcome.line)}", soft_wrap=True)


def convert_stream(
    lines: Iterable[str],
    sink: CSVRecordSink,
    parser: GCTraceParser,
    settings: ConvertSettings,
    console: Console,
    stats: ConversionStats | None = None,
) -> ConversionStats:
    """Parse lines one at a time and persist every match before reading on.

    Non-matching lines are reported and skipped. Every other failure is a
    ``GCTraceError`` and propagates to the caller; ``stats`` ends in
    ``Terminated`` either way.
    """
    if stats is None:
        stats = ConversionStats()
    stats.destination = sink.destination
    line = ""

    def on_conversion_error(field_name: str, raw_text: str) -> None:
        if settings.strict:
            raise FieldConversionError(field_name, raw_text, line)
        stats.conversion_anomalies += 1
        console.print(
            f"[warning]WARNING: cannot convert {field_name}={escape(repr(raw_text))}, "
            f"writing 0:[/warning] {escape(line)}",
            soft_wrap=True,
        )

    iterator = iter(lines)
    try:
        while True:
            try:
                raw_line = next(iterator)
            except StopIteration:
                break
            except (OSError, UnicodeDecodeError) as e:
                raise InputReadError(f"Error reading input: {e}") from e

            line = raw_line.rstrip("\r\n")
            stats.lines_read += 1

            outcome = parser.parse(line, on_conversion_error)
            if isinstance(outcome, NonMatch):
                stats.lines_skipped += 1
                if settings.report_non_matching:
                    report_non_matching(console, outcome)
                continue

            sink.write_record(outcome)
            stats.rows_written += 1
            stats.state = StreamState.STREAMING
    finally:
        stats.state = StreamState.TERMINATED
    return stats


# ============================================================
# RICH OUTPUT RENDERING
# ============================================================

GCTRACE_CSV_THEME = Theme(
    {
        "critical": "bold red",
        "warning": "bold yellow",
        "success": "bold green",
        "info": "cyan",
        "metric": "white",
        "label": "dim white",
    }
)

# Diagnostics go to stderr; stdout may be carrying the CSV itself.
console = Console(theme=GCTRACE_CSV_THEME, stderr=True)


def create_key_value_table(title: str, rows: list[tuple[str, str]]) -> Table:
    """Create a simple two-column key/value table."""
    table = Table(title=title, show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="label")
    table.add_column("Value", style="metric")
    for label, value in rows:
        table.add_row(label, value)
    return table


def build_summary_rows(stats: ConversionStats) -> list[tuple[str, str]]:
    return [
        ("Destination", stats.destination),
        ("Lines read", f"{stats.lines_read:,}"),
        ("Rows written", f"{stats.rows_written:,}"),
        ("Lines skipped", f"{stats.lines_skipped:,}"),
        ("Conversion anomalies", f"{stats.conversion_anomalies:,}"),
        ("Final state", stats.state.value),
    ]


# ============================================================
# TYPER CLI INTERFACE
# ============================================================

app = typer.Typer(
    name="gctrace-csv",
    help="Convert Go GODEBUG=gctrace=1 output into a durable CSV file",
    add_completion=False,
    rich_markup_mode="rich",
)


@app.command()
def convert(
    csv_path: Annotated[
        str,
        typer.Option(
            "--csv",
            "-c",
            help="GC trace output in CSV format (e.g., data.csv). Use '-' for stdout.",
        ),
    ] = "data.csv",
    input_path: Annotated[
        Path | None,
        typer.Option(
            "--input",
            "-i",
            help="Read gctrace lines from this file instead of standard input",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    strict: Annotated[
        bool,
        typer.Option(
            "--strict",
            help="Abort when a matched field cannot be converted instead of writing 0",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Do not report lines that are not gctrace output"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Print a run summary and full tracebacks on errors",
        ),
    ] = False,
) -> None:
    """Stream gctrace lines into CSV, syncing every row to disk.

    Exit codes: 0 = input consumed cleanly, 1 = fatal error.
    """
    settings = ConvertSettings(
        destination=csv_path,
        input_path=input_path,
        strict=strict,
        report_non_matching=not quiet,
        verbose=verbose,
    )

    stats = ConversionStats(destination=settings.destination)
    try:
        parser = GCTraceParser()
        with open_line_source(settings.input_path) as lines, CSVRecordSink(
            settings.destination
        ) as sink:
            convert_stream(lines, sink, parser, settings, console, stats)
    except GCTraceError as e:
        stats.state = StreamState.TERMINATED
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]", soft_wrap=True)
        if settings.verbose:
            console.print_exception()
            console.print(create_key_value_table("gctrace-csv run", build_summary_rows(stats)))
        sys.exit(1)

    if settings.verbose:
        console.print(create_key_value_table("gctrace-csv run", build_summary_rows(stats)))
        if stats.rows_written == 0:
            console.print("[warning]No gctrace lines matched; CSV file is empty[/warning]")


@app.command()
def version() -> None:
    """Display version."""
    typer.echo(f"gctrace-csv {__version__}")


if __name__ == "__main__":
    app()
