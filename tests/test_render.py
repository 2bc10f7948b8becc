"""
Tests for table rendering helpers.
"""

from cli_toolstore.deps_audit import AuditSummary, DepAuditRecord, RiskLevel
from cli_toolstore.render import (
    AUDIT_WIDTHS,
    display_width,
    format_row,
    pad_display,
    print_audit_text,
    tool_display,
    update_color,
)


class TestDisplayWidth:

    def test_plain(self):
        assert display_width("ripgrep") == 7

    def test_ignores_ansi(self):
        assert display_width("\033[32mlatest\033[0m") == 6

    def test_ignores_osc8(self):
        link = "\033]8;;https://example.com\033\\rg\033]8;;\033\\"
        assert display_width(link) == 2

    def test_wide_characters(self):
        assert display_width("工具") == 4


class TestPadding:

    def test_pad_colored_cell(self):
        padded = pad_display("\033[33mupdate\033[0m", 10)
        assert display_width(padded) == 10
        assert padded.endswith("    ")

    def test_never_truncates(self):
        assert pad_display("a-very-long-tool-name", 4) == "a-very-long-tool-name"

    def test_format_row(self):
        assert format_row(["rg", "14.1.0"], (4, 8), "unknown") == "rg   14.1.0   unknown"

    def test_update_color(self):
        assert update_color("latest") == "\033[32m"
        assert update_color("update -> 1.0") == "\033[33m"
        assert update_color("check-failed") == "\033[31m"
        assert update_color("n/a") == ""

    def test_tool_display(self):
        assert tool_display({"tool": "fd", "aliases": ["fdfind"]}) == "fd / fdfind"
        assert tool_display({"tool": "just", "aliases": []}) == "just"


class TestAuditText:

    def test_print_audit_text(self, capsys):
        record = DepAuditRecord(
            name="serde",
            requirement="^1.0.200-with-a-long-suffix",
            kinds="normal",
            optional=False,
            github_stars=9000,
            github_archived=False,
            latest_release_age_days=12,
            risk=RiskLevel.LOW,
            notes=["ok"],
        )
        print_audit_text("/work/Cargo.toml", AuditSummary(low=1), [record])
        lines = capsys.readouterr().out.splitlines()

        assert lines[0] == "Dependency Maintenance Audit"
        assert lines[1] == "Manifest: /work/Cargo.toml"
        assert lines[2] == "Summary: high=0 medium=0 low=1 unknown=0"
        assert lines[3].startswith("NAME")
        row = lines[4]
        assert row.startswith("serde".ljust(AUDIT_WIDTHS[0]))
        assert "^1.0.200-with-…" in row
        assert " low " in row
        assert " 9000 " in row
        assert " no " in row
        assert row.endswith("ok")
        assert " - " in row
