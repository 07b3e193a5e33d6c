"""Tests for merging settings from declarations and overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from site_converge.config import DEFAULT_ASSET_EXCLUDES, ConvergeSettings, load_settings, parse_settings
from site_converge.errors import ConfigError


def test_defaults() -> None:
    settings = ConvergeSettings()

    assert settings.certificate_max_wait == 2700
    assert settings.state_path == Path(".site-converge/state.json")
    assert settings.asset_excludes == DEFAULT_ASSET_EXCLUDES


def test_later_sections_and_overrides_win(tmp_path: Path) -> None:
    settings = load_settings(
        [{"zone_id": "ZA", "upload_workers": "4"}, {"zone_id": "ZB", "verify_remote_assets": "yes"}],
        {"zone_id": "ZC", "profile": None},
        base_dir=tmp_path,
    )

    assert settings.zone_id == "ZC"
    assert settings.upload_workers == 4
    assert settings.verify_remote_assets is True
    assert settings.state_path == tmp_path / ".site-converge" / "state.json"


def test_excludes_accept_comma_separated_string() -> None:
    assert parse_settings({"asset_excludes": "node_modules, .cache"}).asset_excludes == ("node_modules", ".cache")


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"colour": "blue"}, "Unknown setting"),
        ({"upload_workers": "many"}, "Invalid value"),
        ({"retry_attempts": 0}, "at least 1"),
        ({"certificate_max_wait": -1}, "must not be negative"),
    ],
)
def test_invalid_settings_raise(raw: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_settings(raw)
