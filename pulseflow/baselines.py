"""Preflight baselines: pre-existing issues recorded before execution.

Later build/lint/test output is checked against these so that agents only
chase issues they introduced.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import ids
from .models import PreflightBaseline, PreflightCommandBaseline
from .states import IssueSource, IssueType

logger = logging.getLogger(__name__)


# =============================================================================
# Issue baselines
# =============================================================================


async def record_baseline(
    session: AsyncSession,
    workflow_id: str,
    *,
    issue_type: IssueType | str,
    source: IssueSource | str,
    pattern: str,
    file_path: str | None = None,
    description: str | None = None,
) -> PreflightBaseline:
    baseline = PreflightBaseline(
        id=ids.baseline_id(),
        workflow_id=workflow_id,
        issue_type=IssueType(issue_type).value,
        source=IssueSource(source).value,
        pattern=pattern,
        file_path=file_path,
        description=description,
    )
    session.add(baseline)
    await session.flush()
    return baseline


async def get_baselines(session: AsyncSession, workflow_id: str) -> list[PreflightBaseline]:
    result = await session.execute(
        select(PreflightBaseline)
        .where(PreflightBaseline.workflow_id == workflow_id)
        .order_by(PreflightBaseline.recorded_at, PreflightBaseline.id)
    )
    return list(result.scalars().all())


async def get_baselines_by_source(
    session: AsyncSession, workflow_id: str, source: IssueSource | str
) -> list[PreflightBaseline]:
    result = await session.execute(
        select(PreflightBaseline)
        .where(
            PreflightBaseline.workflow_id == workflow_id,
            PreflightBaseline.source == IssueSource(source).value,
        )
        .order_by(PreflightBaseline.recorded_at, PreflightBaseline.id)
    )
    return list(result.scalars().all())


async def count_baselines(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(PreflightBaseline).where(
            PreflightBaseline.workflow_id == workflow_id
        )
    )
    return int(result.scalar_one())


def baseline_covers(baseline: PreflightBaseline, message: str, file_path: str | None) -> bool:
    """True if ``message`` (at ``file_path``) is the pre-existing issue ``baseline`` describes."""
    if baseline.pattern not in message:
        return False
    if baseline.file_path is not None:
        return file_path is not None and file_path == baseline.file_path
    return True


async def matches_baseline(
    session: AsyncSession,
    workflow_id: str,
    source: IssueSource | str,
    message: str,
    file_path: str | None = None,
) -> bool:
    """Scan every baseline for the source; patterns are substrings, not keys."""
    baselines = await get_baselines_by_source(session, workflow_id, source)
    return any(baseline_covers(b, message, file_path) for b in baselines)


async def delete_baselines(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(
        delete(PreflightBaseline).where(PreflightBaseline.workflow_id == workflow_id)
    )
    return result.rowcount


# =============================================================================
# Command baselines
# =============================================================================


async def get_command_baseline(
    session: AsyncSession, workflow_id: str, command: str
) -> PreflightCommandBaseline | None:
    result = await session.execute(
        select(PreflightCommandBaseline).where(
            PreflightCommandBaseline.workflow_id == workflow_id,
            PreflightCommandBaseline.command == command,
        )
    )
    return result.scalar_one_or_none()


async def get_command_baselines(
    session: AsyncSession, workflow_id: str
) -> list[PreflightCommandBaseline]:
    result = await session.execute(
        select(PreflightCommandBaseline)
        .where(PreflightCommandBaseline.workflow_id == workflow_id)
        .order_by(PreflightCommandBaseline.recorded_at, PreflightCommandBaseline.id)
    )
    return list(result.scalars().all())


async def record_command_baseline(
    session: AsyncSession,
    workflow_id: str,
    *,
    command: str,
    source: IssueSource | str,
    stdout: str,
    stderr: str,
    exit_code: int,
) -> PreflightCommandBaseline:
    """Snapshot a verification command's pre-existing output.

    Snapshots are write-once: recording the same command again returns the
    original snapshot untouched.
    """
    existing = await get_command_baseline(session, workflow_id, command)
    if existing is not None:
        logger.debug("Command baseline for %r already recorded; keeping original", command)
        return existing

    snapshot = PreflightCommandBaseline(
        id=ids.command_baseline_id(),
        workflow_id=workflow_id,
        command=command,
        source=IssueSource(source).value,
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
    )
    session.add(snapshot)
    await session.flush()
    return snapshot


async def delete_command_baselines(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(
        delete(PreflightCommandBaseline).where(PreflightCommandBaseline.workflow_id == workflow_id)
    )
    return result.rowcount


# =============================================================================
# Output filtering
# =============================================================================

_TSC_RE = re.compile(r"^(.+?)\((\d+),(\d+)\):\s*(error|warning)\s+(\w+):\s*(.+)$", re.IGNORECASE)
_ESLINT_RE = re.compile(r"^(.+?):(\d+):(\d+)\s*[-–]\s*(error|warning)\s+(.+)$", re.IGNORECASE)
_PREFIX_RE = re.compile(r"^(error|warning):\s*(.+)$", re.IGNORECASE)
_NPM_RE = re.compile(r"^npm\s+(ERR!|WARN)\s*(.+)$", re.IGNORECASE)
_PYTHON_RE = re.compile(r"\w*(Error|Exception):")


@dataclass
class ParsedIssue:
    message: str
    severity: str
    file_path: str | None = None
    line: int | None = None
    code: str | None = None

    @property
    def text(self) -> str:
        return f"{self.code}: {self.message}" if self.code else self.message


@dataclass
class FilteredOutput:
    original: str
    new_issues: list[ParsedIssue] = field(default_factory=list)
    baseline_issues: list[ParsedIssue] = field(default_factory=list)

    @property
    def has_new_issues(self) -> bool:
        return bool(self.new_issues)


def parse_issues(output: str) -> list[ParsedIssue]:
    """Extract errors and warnings from compiler, linter, npm and Python output."""
    issues: list[ParsedIssue] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue

        match = _TSC_RE.match(line)
        if match:
            path, row, _col, severity, code, message = match.groups()
            issues.append(ParsedIssue(message, severity.lower(), path, int(row), code))
            continue

        match = _ESLINT_RE.match(line)
        if match:
            path, row, _col, severity, message = match.groups()
            issues.append(ParsedIssue(message, severity.lower(), path, int(row)))
            continue

        match = _PREFIX_RE.match(line)
        if match:
            issues.append(ParsedIssue(match.group(2), match.group(1).lower()))
            continue

        match = _NPM_RE.match(line)
        if match:
            severity = "error" if match.group(1).upper() == "ERR!" else "warning"
            issues.append(ParsedIssue(match.group(2), severity))
            continue

        if _PYTHON_RE.search(line):
            issues.append(ParsedIssue(line, "error"))
    return issues


def _issue_is_known(issue: ParsedIssue, baselines: Iterable[PreflightBaseline]) -> bool:
    return any(
        b.issue_type == issue.severity and baseline_covers(b, issue.text, issue.file_path)
        for b in baselines
    )


async def filter_output(
    session: AsyncSession,
    workflow_id: str,
    output: str,
    source: IssueSource | str,
) -> FilteredOutput:
    """Split the issues in ``output`` into new ones and known baseline ones."""
    baselines = await get_baselines_by_source(session, workflow_id, source)
    filtered = FilteredOutput(original=output)
    for issue in parse_issues(output):
        if _issue_is_known(issue, baselines):
            filtered.baseline_issues.append(issue)
        else:
            filtered.new_issues.append(issue)
    return filtered


def format_filtered_output(filtered: FilteredOutput) -> str:
    if not filtered.baseline_issues:
        return filtered.original

    lines = [
        filtered.original,
        "",
        "--- Baseline Filter Note ---",
        f"{len(filtered.baseline_issues)} issue(s) were filtered as known baselines.",
    ]
    if filtered.has_new_issues:
        lines.append(f"{len(filtered.new_issues)} new issue(s) require attention.")
    else:
        lines.append("No new issues detected.")
    return "\n".join(lines)
