from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml


CONFIG_FILENAME = "config.yaml"
DEFAULT_DB_FILENAME = "bus_positions.db"

DEFAULT_LINES: Tuple[int, ...] = tuple(range(1, 11))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    base_url: str = "https://www.jaha.com.py"
    timeout_seconds: int = 10
    max_response_bytes: int = 1024 * 1024
    lines: Union[str, Tuple[int, ...]] = DEFAULT_LINES
    poll_interval_seconds: int = 60
    request_delay_ms: int = 500
    db_path: Path = Path(DEFAULT_DB_FILENAME)
    default_limit: int = 100
    max_limit: int = 100
    staleness_warning_sec: int = 180
    staleness_critical_sec: int = 600


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the YAML config.

    An explicit path (argument or BONDIS_CONFIG) must exist. Otherwise
    config.yaml in the working directory is used when present, and built-in
    defaults apply when it is not.
    """
    if config_path is None and os.environ.get("BONDIS_CONFIG"):
        config_path = Path(os.environ["BONDIS_CONFIG"])
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME
        if not config_path.exists():
            logger.info("No %s in %s; using built-in defaults.", CONFIG_FILENAME, Path.cwd())
            return {}
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    logger.info("Loading config from %s", config_path)
    with config_path.open() as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping.")
    return data


def _safe_int(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name, {})
    return value if isinstance(value, dict) else {}


def _parse_lines(raw: Any) -> Union[str, Tuple[int, ...]]:
    if raw is None:
        return DEFAULT_LINES
    if isinstance(raw, str) and raw.strip().lower() == "auto":
        return "auto"
    if not isinstance(raw, list):
        raise ValueError("ingestion.lines must be a list of line ids or 'auto'.")
    lines = []
    for entry in raw:
        if isinstance(entry, bool) or not isinstance(entry, int) or entry <= 0:
            raise ValueError(f"Invalid line id in ingestion.lines: {entry!r}")
        if entry not in lines:
            lines.append(entry)
    return tuple(lines)


def build_settings(config: Dict[str, Any]) -> Settings:
    defaults = Settings()
    source = _section(config, "source")
    ingestion = _section(config, "ingestion")
    storage = _section(config, "storage")
    query = _section(config, "query")
    display = _section(config, "display")

    db_path = os.environ.get("BONDIS_DB_PATH") or storage.get("path") or defaults.db_path
    resolved = Path(db_path)
    if not resolved.is_absolute():
        resolved = Path.cwd() / resolved

    max_limit = max(0, _safe_int(query.get("max_limit", defaults.max_limit), defaults.max_limit))
    default_limit = _safe_int(query.get("default_limit", defaults.default_limit), defaults.default_limit)
    warning = max(
        0,
        _safe_int(
            display.get("staleness_warning_sec", defaults.staleness_warning_sec),
            defaults.staleness_warning_sec,
        ),
    )
    critical = max(
        0,
        _safe_int(
            display.get("staleness_critical_sec", defaults.staleness_critical_sec),
            defaults.staleness_critical_sec,
        ),
    )

    return Settings(
        base_url=str(source.get("base_url") or defaults.base_url),
        timeout_seconds=max(
            1, _safe_int(source.get("timeout_seconds", defaults.timeout_seconds), defaults.timeout_seconds)
        ),
        max_response_bytes=max(
            1,
            _safe_int(
                source.get("max_response_bytes", defaults.max_response_bytes),
                defaults.max_response_bytes,
            ),
        ),
        lines=_parse_lines(ingestion.get("lines")),
        poll_interval_seconds=max(
            1,
            _safe_int(
                ingestion.get("poll_interval_seconds", defaults.poll_interval_seconds),
                defaults.poll_interval_seconds,
            ),
        ),
        request_delay_ms=max(
            0,
            _safe_int(ingestion.get("request_delay_ms", defaults.request_delay_ms), defaults.request_delay_ms),
        ),
        db_path=resolved,
        default_limit=max(0, min(default_limit, max_limit)),
        max_limit=max_limit,
        staleness_warning_sec=warning,
        staleness_critical_sec=max(critical, warning),
    )
