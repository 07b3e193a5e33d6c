"""Tests for the ``site-converge`` command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from site_converge.cli import app
from site_converge.models import CertificateStatus, Plan

SITE_DECLARATION = """
site:
  domain: example.com
  alternative_domains: [www.example.com]
  asset_root: public
settings:
  zone_id: Z123EXAMPLE
  certificate_max_wait: 0
  certificate_poll_interval: 0
  distribution_poll_interval: 0
  retry_base_delay: 0
  retry_max_delay: 0
"""


@pytest.fixture()
def declaration(tmp_path: Path, site_root: Path) -> Path:
    path = tmp_path / "site.yaml"
    path.write_text(SITE_DECLARATION, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def use_fake_provider(monkeypatch: pytest.MonkeyPatch, fake_provider) -> None:
    monkeypatch.setattr(app, "create_provider", lambda settings: fake_provider)


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out)


def test_plan_lists_creates_without_calling_provider(declaration: Path, fake_provider, capsys) -> None:
    exit_code = app.main(["plan", "-f", str(declaration), "--format", "json"])

    report = _json_output(capsys)
    assert exit_code == 0
    assert report["command"] == "plan"
    assert report["summary"]["actions"]["create"] == report["summary"]["total_operations"]
    assert "outcomes" not in report["summary"]
    assert fake_provider.calls == []


def test_apply_then_plan_reports_no_changes(declaration: Path, fake_provider, capsys) -> None:
    assert app.main(["apply", "-f", str(declaration), "--format", "json"]) == 0
    report = _json_output(capsys)
    assert report["summary"]["succeeded"] is True
    assert report["summary"]["outcomes"]["succeeded"] == report["summary"]["total_operations"]
    assert (declaration.resolve().parent / ".site-converge" / "state.json").exists()

    assert app.main(["plan", "-f", str(declaration)]) == 0
    assert "No changes" in capsys.readouterr().out


def test_pending_certificate_exits_with_failure(declaration: Path, fake_provider, capsys) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.PENDING, None)]

    exit_code = app.main(["apply", "-f", str(declaration)])

    output = capsys.readouterr().out
    assert exit_code == 1
    assert "site-distribution" in output
    assert "upstream failure" in output
    assert "Error: Certificate 'site-certificate' was not issued" in output


def test_cycle_in_declarations_exits_with_usage_error(tmp_path: Path, fake_provider, capsys) -> None:
    path = tmp_path / "cycle.yaml"
    path.write_text(
        """
settings:
  zone_id: Z1
resources:
  - id: a
    kind: bucket
    depends_on: [b]
    attributes: {bucket_name: a}
  - id: b
    kind: bucket
    depends_on: [a]
    attributes: {bucket_name: b}
""",
        encoding="utf-8",
    )

    exit_code = app.main(["apply", "-f", str(path)])

    assert exit_code == 2
    assert "Dependency cycle" in capsys.readouterr().out
    assert fake_provider.calls == []


def test_unknown_setting_exits_with_usage_error(tmp_path: Path, capsys) -> None:
    path = tmp_path / "site.yaml"
    path.write_text("settings:\n  colour: blue\n", encoding="utf-8")

    assert app.main(["plan", "-f", str(path)]) == 2
    assert "Unknown setting 'colour'" in capsys.readouterr().out


def test_locked_state_refuses_apply_and_unlock_clears_it(declaration: Path, capsys) -> None:
    state_path = declaration.parent / ".site-converge" / "state.json"
    state_path.parent.mkdir(parents=True)
    lock_path = state_path.with_name("state.json.lock")
    lock_path.write_text("{}", encoding="utf-8")

    assert app.main(["apply", "-f", str(declaration)]) == 2
    assert "locked by another apply" in capsys.readouterr().out

    assert app.main(["unlock", "-f", str(declaration)]) == 0
    assert "Removed lock" in capsys.readouterr().out
    assert not lock_path.exists()


def test_command_line_overrides_win(declaration: Path, tmp_path: Path, capsys) -> None:
    state_path = tmp_path / "elsewhere" / "state.json"

    exit_code = app.main(
        [
            "apply",
            "-f",
            str(declaration),
            "--state",
            str(state_path),
            "--zone-id",
            "ZOVERRIDE",
            "--format",
            "json",
        ]
    )

    report = _json_output(capsys)
    assert exit_code == 0
    assert report["metadata"]["zone_id"] == "ZOVERRIDE"
    assert state_path.exists()


def test_destroy_removes_recorded_resources(declaration: Path, fake_provider, capsys) -> None:
    app.main(["apply", "-f", str(declaration)])
    capsys.readouterr()

    assert app.main(["destroy", "-f", str(declaration), "--format", "json"]) == 0

    report = _json_output(capsys)
    assert report["summary"]["actions"]["destroy"] == report["summary"]["total_operations"]
    assert fake_provider.resources == {}


def test_render_table_for_empty_plan() -> None:
    report = app.ConvergenceReport(command="plan", plan=Plan(), result=None, metadata={})

    assert app.render_table(report) == "No resources declared or recorded."


def test_no_command_prints_help(capsys) -> None:
    assert app.main([]) == 0
    assert "usage: site-converge" in capsys.readouterr().out
