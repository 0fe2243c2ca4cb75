# executors/scan.py
from __future__ import annotations

import json
import os
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from ..model import JobKind, JobResult, utcnow
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool

SEVERITIES = ("unknown", "low", "medium", "high", "critical")


@dataclass(frozen=True)
class ScanOutcome:
    findings: Dict[str, int] = field(default_factory=dict)  # severity -> count
    report_url: str = ""


class Scanner(Protocol):
    def scan(self, scan_type: str, target: str) -> ScanOutcome: ...


class TrivyScanner:
    """trivy <fs|image|config|repo> --format json; the report is kept on disk."""

    def __init__(self, report_dir: str | None = None):
        self.report_dir = report_dir

    def scan(self, scan_type: str, target: str) -> ScanOutcome:
        fd, report = tempfile.mkstemp(prefix="pipecore-trivy-", suffix=".json", dir=self.report_dir)
        os.close(fd)
        run_tool(["trivy", scan_type, "--quiet", "--format", "json", "--output", report, target])

        data = json.loads(Path(report).read_text(encoding="utf-8") or "{}")
        counts: Counter = Counter()
        for result in data.get("Results") or []:
            for vuln in result.get("Vulnerabilities") or []:
                counts[str(vuln.get("Severity", "unknown")).lower()] += 1
            for misconf in result.get("Misconfigurations") or []:
                counts[str(misconf.get("Severity", "unknown")).lower()] += 1
        return ScanOutcome(findings=dict(counts), report_url=Path(report).resolve().as_uri())


def count_at_or_above(findings: Mapping[str, int], threshold: str) -> int:
    rank = SEVERITIES.index(threshold)
    return sum(n for sev, n in findings.items() if sev in SEVERITIES and SEVERITIES.index(sev) >= rank)


class SecurityScanExecutor(JobExecutor):
    kind = JobKind.SECURITY_SCAN

    def __init__(self, scanner: Optional[Scanner] = None):
        self.scanner = scanner or TrivyScanner()

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        threshold = str(inputs.get("severity-threshold") or "high").lower()
        if threshold not in SEVERITIES:
            return JobResult.failure(
                "InvalidThreshold",
                f"severity-threshold must be one of {', '.join(SEVERITIES)}, got {threshold!r}",
                started_at=started,
            )

        try:
            outcome = self.scanner.scan(str(inputs.get("scan-type") or "fs"), str(inputs.get("target") or "."))
        except ToolFailure as e:
            return self.tool_failure(e, started_at=started)
        except (OSError, ValueError) as e:
            return JobResult.failure("ScanReportError", str(e), started_at=started)

        count = count_at_or_above(outcome.findings, threshold)
        if count > 0:
            return JobResult.failure(
                "VulnerabilitiesFound",
                f"{count} finding(s) at or above '{threshold}'",
                details={"vulnerabilities": count, "findings": dict(outcome.findings), "report-url": outcome.report_url},
                started_at=started,
            )
        return JobResult.success({"vulnerabilities": "0", "report-url": outcome.report_url}, started_at=started)
