from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import MISSING, asdict, fields
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .angles import parse_angle
from .parameters import ExtractionParameters, FilterParameters, SolveParameters

logger = logging.getLogger(__name__)

SETTINGS_PATH = Path.home() / ".zestellar_settings.json"
# Increment when the on-disk settings layout changes
SETTINGS_SCHEMA_VERSION = 1
INDEX_ENV_VAR = "ASTROMETRY_INDEX_FILES"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_OPTIONAL_INTS = {"channel"}
# Accept sexagesimal text as well as degrees
_ANGLE_FIELDS = {"search_ra": True, "search_dec": False}


def _float_or_none(value: object) -> Optional[float]:
    if value is None or value is False or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_or_none(value: object) -> Optional[int]:
    number = _float_or_none(value)
    return None if number is None else int(number)


def _coerce(value: object, default: Any, name: str) -> Any:
    """Convert a JSON value to the type of *default*; ``MISSING`` means keep the default."""
    if default is None:
        if name in _ANGLE_FIELDS:
            return parse_angle(value, is_ra=_ANGLE_FIELDS[name])
        return _int_or_none(value) if name in _OPTIONAL_INTS else _float_or_none(value)
    if isinstance(default, Enum):
        try:
            return type(default)(str(value).strip().lower())
        except ValueError:
            return MISSING
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    try:
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        return MISSING
    if isinstance(default, str):
        return str(value) if value is not None else MISSING
    return MISSING


def _apply(target: Any, payload: object) -> Any:
    if not isinstance(payload, dict):
        return target
    for spec in fields(target):
        if spec.name not in payload:
            continue
        current = getattr(target, spec.name)
        value = payload[spec.name]
        if isinstance(current, (ExtractionParameters, FilterParameters)):
            _apply(current, value)
            continue
        exemplar = None if spec.default is None else current
        coerced = _coerce(value, exemplar, spec.name)
        if coerced is MISSING:
            logger.warning("ignoring invalid setting %s=%r", spec.name, value)
            continue
        setattr(target, spec.name, coerced)
    return target


def _resolve_settings_path() -> Path:
    """Return the active settings path, honoring runtime overrides on the package."""
    pkg = sys.modules.get("zestellar")
    override = getattr(pkg, "SETTINGS_PATH", None) if pkg is not None else None
    if override:
        return Path(override).expanduser()
    return SETTINGS_PATH


def parameters_to_dict(params: SolveParameters) -> dict[str, Any]:
    def _plain(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: _plain(v) for k, v in value.items()}
        return value

    data = _plain(asdict(params))
    data["schema_version"] = SETTINGS_SCHEMA_VERSION
    return data


def parameters_from_dict(payload: object) -> SolveParameters:
    """Build SolveParameters from a mapping, starting from its named profile.

    Unknown keys are ignored and values that cannot be converted keep the
    profile default.
    """
    base = SolveParameters()
    if isinstance(payload, dict) and payload.get("profile"):
        try:
            base = SolveParameters.from_profile(str(payload["profile"]))
        except ValueError:
            logger.warning("unknown profile %r in settings; using defaults", payload["profile"])
    return _apply(base, payload)


def load_parameters(path: Path | str | None = None) -> SolveParameters:
    path = Path(path).expanduser() if path else _resolve_settings_path()
    if not path.exists():
        return SolveParameters()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("cannot read settings %s: %s", path, exc)
        return SolveParameters()
    return parameters_from_dict(payload)


def save_parameters(params: SolveParameters, path: Path | str | None = None) -> Path:
    path = Path(path).expanduser() if path else _resolve_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(parameters_to_dict(params), indent=2), encoding="utf-8")
    return path


def _platform_index_folders() -> list[Path]:
    home = Path.home()
    if sys.platform.startswith("win"):
        local = Path(os.environ.get("LOCALAPPDATA", home / "AppData" / "Local"))
        return [
            local / "cygwin_ansvr" / "usr" / "share" / "astrometry" / "data",
            local / "astrometry" / "data",
        ]
    if sys.platform == "darwin":
        return [
            home / "Library" / "Application Support" / "Astrometry",
            Path("/usr/local/share/astrometry"),
            Path("/opt/homebrew/share/astrometry"),
        ]
    return [
        home / ".local" / "share" / "kstars" / "astrometry",
        Path("/usr/share/astrometry"),
        Path("/usr/local/share/astrometry"),
    ]


def default_index_paths() -> list[Path]:
    """Index folders from ``ASTROMETRY_INDEX_FILES`` followed by existing platform defaults."""
    paths: list[Path] = []
    env = os.environ.get(INDEX_ENV_VAR, "")
    for chunk in env.split(os.pathsep):
        chunk = chunk.strip()
        if chunk:
            paths.append(Path(chunk).expanduser())
    for folder in _platform_index_folders():
        if folder.is_dir() and folder not in paths:
            paths.append(folder)
    return paths


def configure_logging(level: str | int = "INFO", log_file: Path | str | None = None) -> None:
    """Set up console logging and, optionally, a log file truncated at each call."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    if not any(getattr(h, "_zestellar", False) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler._zestellar = True  # type: ignore[attr-defined]
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    for handler in list(root.handlers):
        if getattr(handler, "_zestellar", False):
            if isinstance(handler, logging.FileHandler):
                root.removeHandler(handler)
                handler.close()
            else:
                handler.setLevel(level)
    if log_file is not None:
        file_handler = logging.FileHandler(Path(log_file).expanduser(), mode="w", encoding="utf-8")
        file_handler._zestellar = True  # type: ignore[attr-defined]
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        root.info("Logging initialized, writing to %s", log_file)


__all__ = [
    "INDEX_ENV_VAR",
    "SETTINGS_PATH",
    "SETTINGS_SCHEMA_VERSION",
    "configure_logging",
    "default_index_paths",
    "load_parameters",
    "parameters_from_dict",
    "parameters_to_dict",
    "save_parameters",
]
