"""
Output rendering and formatting.

Tables are aligned by terminal display width (via wcwidth) with ANSI
escapes and OSC 8 links ignored for measurement, so colored or
emoji-bearing cells line up.
"""

from __future__ import annotations

import json
import os
import re
import sys
from typing import TYPE_CHECKING, Any, Iterable

from wcwidth import wcswidth

from .common import truncate_for_log

if TYPE_CHECKING:
    from .deps_audit import AuditSummary, DepAuditRecord
    from .engine import UnmanagedBinary
    from .updates import ListReport


USE_COLOR = os.environ.get("TOOLSTORE_COLOR", "1") == "1"

GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"

CSI_RE = re.compile(r'\x1b\[[0-?]*[ -/]*[@-~]')
OSC8_OPEN_RE = re.compile(r'\x1b\]8;[^\\]*\\')
OSC8_CLOSE_RE = re.compile(r'\x1b\]8;;\\')

LIST_WIDTHS = (24, 20, 6)
UPDATE_WIDTH = 18
SUPPORTED_WIDTH = 24
AUDIT_WIDTHS = (18, 15, 8, 8, 10, 10, 9)


def strip_control_for_width(s: str) -> str:
    s = OSC8_OPEN_RE.sub('', s)
    s = OSC8_CLOSE_RE.sub('', s)
    return CSI_RE.sub('', s)


def display_width(s: str) -> int:
    visible = strip_control_for_width(s)
    w = wcswidth(visible)
    if w < 0:
        w = len(visible)
    return w


def pad_display(cell: str, width: int) -> str:
    """Left-align cell in width columns (never truncates)."""
    return cell + ' ' * max(width - display_width(cell), 0)


def format_row(cells: Iterable[str], widths: Iterable[int], tail: str) -> str:
    padded = [pad_display(cell, w) for cell, w in zip(cells, widths)]
    return ' '.join([*padded, tail])


def colorize(text: str, color: str) -> str:
    """Apply color to text when colors are enabled and stdout is a terminal."""
    if not USE_COLOR or not text or not sys.stdout.isatty():
        return text
    return f"{color}{text}{RESET}"


def update_color(status: str) -> str:
    if status == "latest":
        return GREEN
    if status == "check-failed":
        return RED
    if status.startswith("update"):
        return YELLOW
    return ""


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def print_list_text(report: ListReport, check_updates: bool) -> None:
    if not report.rows:
        print("No tools installed.")
    elif check_updates:
        print(format_row(["NAME", "VERSION", "ACTIVE", "UPDATE"], (*LIST_WIDTHS, UPDATE_WIDTH), "SOURCE"))
        for row in report.rows:
            status = row.update or "n/a"
            print(format_row(
                [row.name, row.version, "*" if row.active else "", colorize(status, update_color(status))],
                (*LIST_WIDTHS, UPDATE_WIDTH),
                row.source,
            ))
    else:
        print(format_row(["NAME", "VERSION", "ACTIVE"], LIST_WIDTHS, "SOURCE"))
        for row in report.rows:
            print(format_row([row.name, row.version, "*" if row.active else ""], LIST_WIDTHS, row.source))

    print(f"\nScope: {report.scope}")
    print(f"Tool binaries path: {report.bin_path}")
    if check_updates and report.check_failures:
        print("\nUpdate check warnings:")
        for name, err in report.check_failures:
            print(f"- {name}: {err}")
    print_unmanaged_text(report.unmanaged)


def print_unmanaged_text(unmanaged: list[UnmanagedBinary]) -> None:
    for item in unmanaged:
        print(f"\nDetected unmanaged binary: {item.name} {item.version} ({item.path})")
        print(f"Run `toolstore tool install {item.name}` to adopt it into managed store.")


def tool_display(row: dict) -> str:
    if not row["aliases"]:
        return row["tool"]
    return " / ".join([row["tool"], *row["aliases"]])


def print_supported_text(rows: list[dict]) -> None:
    print(format_row(["TOOL"], (SUPPORTED_WIDTH,), "SOURCES"))
    for row in rows:
        print(format_row([tool_display(row)], (SUPPORTED_WIDTH,), row["sources"]))


def _opt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def print_audit_text(manifest_path: str, summary: AuditSummary, records: list[DepAuditRecord]) -> None:
    print("Dependency Maintenance Audit")
    print(f"Manifest: {manifest_path}")
    print(
        f"Summary: high={summary.high} medium={summary.medium} "
        f"low={summary.low} unknown={summary.unknown}"
    )
    print(format_row(
        ["NAME", "REQ", "RISK", "STARS", "REL_AGE_D", "PUSH_AGE_D", "ARCHIVED"],
        AUDIT_WIDTHS,
        "NOTES",
    ))
    for rec in records:
        print(format_row(
            [
                rec.name,
                truncate_for_log(rec.requirement, 15),
                rec.risk.value,
                _opt(rec.github_stars),
                _opt(rec.latest_release_age_days),
                _opt(rec.github_push_age_days),
                _opt(rec.github_archived),
            ],
            AUDIT_WIDTHS,
            truncate_for_log("; ".join(rec.notes), 120),
        ))
