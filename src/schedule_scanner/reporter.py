"""Plain-text rendering of scan results."""
import re
from typing import List, Sequence

from .models import ScanResult

KST_OFFSET_HOURS = 9

# (min, max) for minute, hour, day-of-month, month, day-of-week
_CRON_FIELD_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))
_CRON_FIELD_CHARS = re.compile(r'^[0-9*,/-]+$')


def is_valid_cron_expression(parts: Sequence[str]) -> bool:
    """Loose check of a split five-field cron expression.

    Plain numbers must be in range; steps, ranges and lists are accepted as long
    as they only use digits and ``* , / -``.
    """
    if len(parts) != 5:
        return False
    for part, (low, high) in zip(parts, _CRON_FIELD_RANGES):
        if part == '*':
            continue
        if part.isdigit():
            if not low <= int(part) <= high:
                return False
            continue
        if not _CRON_FIELD_CHARS.match(part):
            return False
    return True


def convert_to_kst(schedule: str) -> str:
    """Shift a UTC cron expression to KST (UTC+9).

    Only a plain numeric hour is shifted; the day of week moves forward when the
    shift crosses midnight. Anything else is returned unchanged.
    """
    parts = schedule.split()
    if len(parts) != 5 or not is_valid_cron_expression(parts):
        return schedule
    minute, hour, dom, month, dow = parts
    if not hour.isdigit():
        return schedule
    shifted = int(hour) + KST_OFFSET_HOURS
    new_hour = shifted % 24
    day_shift = shifted // 24
    if day_shift and dow.isdigit():
        dow = str((int(dow) + day_shift) % 7)
    return f"{minute} {new_hour} {dom} {month} {dow}"


def _cell(value: str, width: int) -> str:
    if len(value) <= width:
        return value.ljust(width)
    return value[:width - 2] + ".."


def format_report(result: ScanResult, version: str = "") -> str:
    """Render the result as a fixed-width table, one row per cron schedule."""
    lines: List[str] = []
    if version:
        lines.append(f"GHES Schedule Scanner {version}")
        lines.append("")
    lines.append("Scheduled Workflows Summary:")
    row = "{:<3} {:<35} {:<35} {:<13} {:<13} {:<15} {}"
    lines.append(row.format("NO", "REPOSITORY", "WORKFLOW", "UTC SCHEDULE", "KST SCHEDULE",
                            "LAST COMMITTER", "LAST STATUS"))
    for index, wf in enumerate(result.workflows, start=1):
        committer = wf.last_committer if wf.is_active_user else f"{wf.last_committer} (Inactive)"
        for schedule in wf.cron_schedules:
            lines.append(row.format(
                index,
                _cell(wf.repo_name, 35),
                _cell(wf.workflow_name, 35),
                _cell(schedule, 13),
                _cell(convert_to_kst(schedule), 13),
                _cell(committer, 15),
                wf.last_status,
            ))
    lines.append("")
    lines.append(
        f"Total Repositories: {result.total_repos} | Excluded Repositories: {result.excluded_repos_count} | "
        f"Scheduled Workflows Found: {result.workflow_count}"
    )
    if result.errors:
        lines.append(f"Failed Repositories: {result.failed_repos_count} "
                     f"({', '.join(e.repository for e in result.errors)})")
    lines.append(f"Scan Duration: {result.scan_duration:.2f}s | Max Concurrent Scans: {result.max_concurrent_scans}")
    return "\n".join(lines) + "\n"
