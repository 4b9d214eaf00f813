"""Configuration loading for the MPD playlist builder."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

CONFIG_SEARCH_PATHS: List[Path] = []

DEFAULT_MPD_HOST = "localhost"
DEFAULT_MPD_PORT = 6600
DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_WORKERS = 3
DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_STAGING_SUFFIX = ".mmb-staging"


def load_yaml(path):
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def _resolve_config_path() -> Path:
    """Return the most appropriate config file path for the current run."""

    candidates = []

    env_override = os.environ.get("MMB_CONFIG_PATH")
    if env_override:
        candidates.append(Path(env_override).expanduser())

    candidates.append(Path("/app/config.yml"))
    candidates.append(Path(__file__).resolve().parent.parent / "config.yml")

    CONFIG_SEARCH_PATHS[:] = candidates

    for candidate in candidates:
        if candidate.exists():
            return candidate

    return candidates[0]


def _resolve_runtime_dir(config_dir: Path) -> Path:
    """Determine where runtime artefacts (logs, state) should live."""

    env_override = os.environ.get("MMB_RUNTIME_DIR")
    if env_override:
        return Path(env_override).expanduser()

    app_dir = Path("/app")
    if app_dir.exists() and os.access(app_dir, os.W_OK):
        return app_dir

    return config_dir


def _resolve_path_setting(raw_value, default_path: Path, base_dir: Path) -> Path:
    """Resolve a path from config, allowing relative paths."""

    if isinstance(raw_value, str) and raw_value.strip():
        candidate = Path(raw_value.strip()).expanduser()
        if not candidate.is_absolute():
            candidate = (base_dir / candidate).resolve()
    else:
        candidate = default_path

    return candidate


def _coerce_positive_float(value):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric <= 0:
        return None
    return numeric


def _coerce_positive_int(value):
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return None
    if numeric <= 0:
        return None
    return numeric


def _coerce_runtime_flag(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "y", "on"}:
            return True
        if lowered in {"false", "0", "no", "n", "off", ""}:
            return False
    if value is None:
        return default
    return bool(value)


@dataclass
class Settings:
    config_path: Optional[Path]
    config_dir: Path
    runtime_dir: Path
    mpd_host: str = DEFAULT_MPD_HOST
    mpd_port: int = DEFAULT_MPD_PORT
    mpd_password: Optional[str] = None
    mpd_timeout: float = DEFAULT_TIMEOUT
    run_forever: bool = False
    max_workers: int = DEFAULT_MAX_WORKERS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    staging_suffix: str = DEFAULT_STAGING_SUFFIX
    show_progress: bool = True
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    playlist_log_dir: Optional[Path] = None
    api_host: str = "127.0.0.1"
    api_port: int = 5055
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def playlists_file(self) -> Path:
        return self.config_dir / "playlists.yml"

    @property
    def state_file(self) -> Path:
        return self.runtime_dir / "materialized_state.json"


def settings_from_mapping(
    cfg: Dict[str, Any],
    config_dir: Path,
    runtime_dir: Path,
    config_path: Optional[Path] = None,
) -> Settings:
    """Build ``Settings`` from an already-parsed config mapping."""

    cfg = cfg if isinstance(cfg, dict) else {}

    mpd_cfg = cfg.get("mpd") if isinstance(cfg.get("mpd"), dict) else {}
    # Flat keys are still honoured for single-section configs.
    host = mpd_cfg.get("host") or cfg.get("MPD_HOST") or DEFAULT_MPD_HOST
    port = _coerce_positive_int(mpd_cfg.get("port", cfg.get("MPD_PORT"))) or DEFAULT_MPD_PORT
    password = mpd_cfg.get("password") or cfg.get("MPD_PASSWORD") or None
    timeout = _coerce_positive_float(mpd_cfg.get("timeout")) or DEFAULT_TIMEOUT

    runtime_cfg = cfg.get("runtime") if isinstance(cfg.get("runtime"), dict) else {}
    logging_cfg = cfg.get("logging") if isinstance(cfg.get("logging"), dict) else {}
    api_cfg = cfg.get("api") if isinstance(cfg.get("api"), dict) else {}

    log_file = _resolve_path_setting(
        logging_cfg.get("file"),
        runtime_dir / "logs/mpd_music_builder.log",
        config_dir,
    )
    if logging_cfg.get("file") is False:
        log_file = None

    playlist_log_dir = logging_cfg.get("playlist_debug_dir")
    if isinstance(playlist_log_dir, str) and not playlist_log_dir.strip():
        playlist_log_dir = None
    if playlist_log_dir is None:
        default_log_dir = log_file.parent if log_file else runtime_dir / "logs"
        resolved_playlist_dir: Optional[Path] = default_log_dir / "playlists"
    elif playlist_log_dir is False:
        resolved_playlist_dir = None
    else:
        resolved_playlist_dir = _resolve_path_setting(
            playlist_log_dir, runtime_dir / "logs/playlists", config_dir
        )

    staging_suffix = runtime_cfg.get("staging_suffix")
    if not isinstance(staging_suffix, str) or not staging_suffix.strip():
        staging_suffix = DEFAULT_STAGING_SUFFIX

    return Settings(
        config_path=config_path,
        config_dir=config_dir,
        runtime_dir=runtime_dir,
        mpd_host=str(host),
        mpd_port=port,
        mpd_password=str(password) if password else None,
        mpd_timeout=timeout,
        run_forever=_coerce_runtime_flag(runtime_cfg.get("run_forever"), False),
        max_workers=_coerce_positive_int(runtime_cfg.get("max_workers")) or DEFAULT_MAX_WORKERS,
        poll_interval=_coerce_positive_float(runtime_cfg.get("poll_interval_seconds"))
        or DEFAULT_POLL_INTERVAL,
        staging_suffix=staging_suffix.strip(),
        show_progress=_coerce_runtime_flag(runtime_cfg.get("progress"), True),
        log_level=str(logging_cfg.get("level", "INFO")).upper(),
        log_file=log_file,
        playlist_log_dir=resolved_playlist_dir,
        api_host=str(api_cfg.get("host") or "127.0.0.1"),
        api_port=_coerce_positive_int(api_cfg.get("port")) or 5055,
        extra={k: v for k, v in cfg.items() if k not in {"mpd", "runtime", "logging", "api"}},
    )


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from ``config.yml``, falling back to defaults when absent."""

    path = Path(config_path) if config_path is not None else _resolve_config_path()
    cfg: Dict[str, Any] = {}
    if path.exists():
        path = path.resolve()
        cfg = load_yaml(path) or {}
        found: Optional[Path] = path
    else:
        found = None

    config_dir = path.parent
    runtime_dir = _resolve_runtime_dir(config_dir).resolve()
    return settings_from_mapping(cfg, config_dir, runtime_dir, config_path=found)
