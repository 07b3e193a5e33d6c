"""Engine settings merged from declaration files and command-line overrides."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, MutableMapping, Sequence, Tuple

from .errors import ConfigError

DEFAULT_ASSET_EXCLUDES: Tuple[str, ...] = (".git", ".hg", ".svn", ".terraform", ".DS_Store")


@dataclass(frozen=True, slots=True)
class ConvergeSettings:
    """Typed, immutable view of the engine settings."""

    zone_id: str | None = None
    state_path: Path = Path(".site-converge/state.json")
    region: str = "us-east-1"
    profile: str | None = None
    certificate_max_wait: float = 2700.0
    certificate_poll_interval: float = 15.0
    distribution_deploy_timeout: float = 1800.0
    distribution_poll_interval: float = 20.0
    retry_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    upload_workers: int = 8
    asset_excludes: Tuple[str, ...] = DEFAULT_ASSET_EXCLUDES
    verify_remote_assets: bool = False


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_excludes(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(part) for part in value)


# field name -> parser
_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "zone_id": _as_optional_str,
    "state_path": lambda value: Path(str(value)).expanduser(),
    "region": str,
    "profile": _as_optional_str,
    "certificate_max_wait": float,
    "certificate_poll_interval": float,
    "distribution_deploy_timeout": float,
    "distribution_poll_interval": float,
    "retry_attempts": int,
    "retry_base_delay": float,
    "retry_max_delay": float,
    "upload_workers": int,
    "asset_excludes": _as_excludes,
    "verify_remote_assets": _as_bool,
}


def parse_settings(raw: Mapping[str, Any], *, base: ConvergeSettings | None = None) -> ConvergeSettings:
    """Return ``base`` updated with the values in ``raw``.

    Unknown keys and values that do not coerce to the field type raise
    :class:`ConfigError`. ``None`` values leave the base value untouched.
    """

    known = {item.name for item in fields(ConvergeSettings)}
    changes: MutableMapping[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            raise ConfigError(f"Unknown setting '{key}'")
        if value is None:
            continue
        try:
            changes[key] = _PARSERS[key](value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for setting '{key}': {value!r}") from exc

    settings = replace(base or ConvergeSettings(), **changes)
    _validate(settings)
    return settings


def load_settings(
    sections: Sequence[Mapping[str, Any]],
    overrides: Mapping[str, Any] | None = None,
    *,
    base_dir: Path | None = None,
) -> ConvergeSettings:
    """Merge ``settings:`` sections in order, then apply ``overrides``.

    A relative ``state_path`` from a section resolves against ``base_dir``.
    """

    settings = ConvergeSettings()
    for section in sections:
        settings = parse_settings(section, base=settings)
    if overrides:
        settings = parse_settings(overrides, base=settings)

    if base_dir is not None and not settings.state_path.is_absolute():
        settings = replace(settings, state_path=base_dir / settings.state_path)
    return settings


def _validate(settings: ConvergeSettings) -> None:
    if settings.retry_attempts < 1:
        raise ConfigError("retry_attempts must be at least 1")
    if settings.upload_workers < 1:
        raise ConfigError("upload_workers must be at least 1")
    for name in (
        "certificate_max_wait",
        "certificate_poll_interval",
        "distribution_deploy_timeout",
        "distribution_poll_interval",
        "retry_base_delay",
        "retry_max_delay",
    ):
        if getattr(settings, name) < 0:
            raise ConfigError(f"{name} must not be negative")
