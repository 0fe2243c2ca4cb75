"""Terminal output for the pipecore CLI."""

from __future__ import annotations

import sys
import traceback
from typing import Iterable, List, Mapping, Optional

from ..model import JobResult, PipelineRun

RULE = "=" * 40


class Console:
    """
    Everything the CLI prints goes through here.

    Progress and results go to stdout, errors to stderr. With `debug` set,
    error details and tracebacks are shown in full.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug

    def print_header(self, title: str) -> None:
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, pipeline: str, source: str, job_count: int, run_id: str = "") -> None:
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline} ({source})")
        print(f"Jobs: {job_count}")
        if run_id:
            print(f"Run ID: {run_id}")
        print()

    def print_job_event(self, name: str, status: str) -> None:
        """Scheduler listener: one line per job state change."""
        label = "STARTED" if status == "running" else status.upper()
        print(f"JOB {label}: {name}")

    def print_job_result(self, name: str, result: JobResult) -> None:
        print(f"  {name}: {result.status.value.upper()}")
        error = result.error
        if error is None:
            return
        message = error.message if self.debug else (error.message or "no message").splitlines()[0]
        print(f"    {error.kind}: {message}")
        if self.debug:
            for key, value in error.details.items():
                print(f"      {key}={value}")

    def print_results(self, run: PipelineRun) -> None:
        print("\n" + RULE)
        print(f"RESULTS  run {run.run_id}")
        print(RULE)
        for name, result in run.results.items():
            self.print_job_result(name, result)
        print("-" * len(RULE))
        cancelled = " (cancelled)" if run.cancelled else ""
        print(f"PIPELINE: {run.status.value.upper()}{cancelled}")
        for fault in run.faults:
            print(f"FAULT: {str(fault).splitlines()[0]}")

    def print_plan(self, stages: List[List[str]], kinds: Mapping[str, str]) -> None:
        for number, stage in enumerate(stages, start=1):
            print(f"Stage {number}:")
            for name in stage:
                print(f"  {name} ({kinds[name]})")

    def print_contract(self, kind: str, inputs: Iterable[str], outputs: Iterable[str], secrets: Iterable[str]) -> None:
        print(f"\n{kind}")
        for label, entries in (("inputs", inputs), ("outputs", outputs), ("secrets", secrets)):
            print(f"  {label + ':':<9}{', '.join(entries) or '-'}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print an error block on stderr:

            ERROR: <title>
            <message>
              <detail>...

            <suggestion>
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        print("\n".join(lines), file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            print(f"Error: {type(exc).__name__}: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        print(message)


# Set by the CLI group; library code falls back to a default console
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
