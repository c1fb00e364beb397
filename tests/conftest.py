"""Shared fixtures for gctrace-csv tests."""

from io import StringIO

import pytest
from rich.console import Console

SAMPLE_LINE = (
    "gc 3 @3.182s 0%: 0.015+0.59+0.096 ms clock, "
    "0.19+0.10/1.3/3.0+1.1 ms cpu, 4->4->2 MB, 5 MB goal, 3 MB stacks, 1 MB globals, 12 P"
)


def make_line(gc_num: int, seconds: str = "1.5") -> str:
    return (
        f"gc {gc_num} @{seconds}s 2%: 0.004+0.33+0.051 ms clock, "
        "0.056+0.12/0.56/0.94+0.61 ms cpu, 8->9->4 MB, 10 MB goal, 0 MB stacks, 0 MB globals, 8 P"
    )


@pytest.fixture
def sample_line() -> str:
    return SAMPLE_LINE


@pytest.fixture
def diagnostics() -> StringIO:
    return StringIO()


@pytest.fixture
def quiet_console(diagnostics: StringIO) -> Console:
    """Console that records output instead of writing to stderr."""
    return Console(file=diagnostics, width=200, color_system=None)
