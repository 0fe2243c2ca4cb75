# pipecore_pipeline.py
# Pipeline for pipecore itself: lint and test, scan, cut a release on tags, notify
from __future__ import annotations

from pipecore import ci, notify, pr_check, release, security_scan, wf

NAME = "pipecore"


def pipeline():
    return wf(
        # PR hygiene - only on pull requests
        pr_check(
            "pr-hygiene",
            require_labels=True,
            title_format="conventional",
            secrets=["github-token"],
            if_="context.event == 'pull_request'",
        ),

        # Lint + tests with coverage gate
        ci(
            "test",
            install_command="python -m pip install -e .[test]",
            lint_command="ruff check src tests",
            test_command="pytest -q --cov=pipecore --cov-report=term",
            coverage_threshold=80,
        ),

        # Filesystem scan for known vulnerabilities
        security_scan("scan", scan_type="fs", severity_threshold="high", needs=["test"]),

        # Release only from tags
        release(
            "release",
            bump="${{ context.bump || 'patch' }}",
            secrets=["npm-token"],
            needs=["test", "scan"],
            if_="context.event == 'tag'",
        ),

        # Always report, even when something upstream failed
        notify(
            "notify",
            status="auto",
            channels="slack",
            message="pipecore ${{ jobs.release.outputs.new-version || 'dev' }} pipeline finished",
            needs=["release"],
            if_="always()",
        ),
    )

