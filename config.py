from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEFAULT_BASE_URL = 'https://api.duffel.com'
DEFAULT_API_VERSION = 'v2'


def project_root_dir() -> Path:
    # For dev runs, keep config.env next to the source files.
    return Path(__file__).resolve().parent


def _candidate_dotenv_paths() -> list[Path]:
    """Return candidate locations for config.env.

    Precedence rule (first existing file wins):
    1) next to the sources
    2) current working directory
    """
    candidates: list[Path] = [project_root_dir() / 'config.env']

    try:
        candidates.append(Path.cwd() / 'config.env')
    except OSError:
        pass

    # De-dup while preserving order
    out: list[Path] = []
    seen: set[str] = set()
    for p in candidates:
        key = str(p.resolve())
        if key in seen:
            continue
        seen.add(key)
        out.append(p)
    return out


def dotenv_path() -> Path:
    """Return the first existing config.env candidate, else the dev default."""
    for p in _candidate_dotenv_paths():
        if p.is_file():
            return p
    return project_root_dir() / 'config.env'


def _is_placeholder(value: str) -> bool:
    v = (value or '').strip()
    if not v:
        return True
    return v.lower() in {'x', 'your_token', 'your_duffel_token', 'duffel_test_placeholder',
                         'placeholder', 'example', 'changeme'}


def load_dotenv_once() -> Optional[Path]:
    """Load config.env if present.

    The file overrides the process environment only when DUFFEL_API_TOKEN is
    missing there or holds a placeholder value.
    """
    env_path = dotenv_path()
    if not env_path.is_file():
        return None

    should_override = _is_placeholder(os.getenv('DUFFEL_API_TOKEN') or '')
    load_dotenv(dotenv_path=str(env_path), override=should_override)
    return env_path


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


@dataclass(frozen=True)
class LoadedConfig:
    duffel_api_token: str
    loaded_from: Optional[Path]
    duffel_base_url: str = DEFAULT_BASE_URL
    duffel_version: str = DEFAULT_API_VERSION
    timeout: float = 30.0
    max_pages: int = 200
    airline_cache_ttl_hours: int = 24
    airline_batch_size: int = 10
    cleanup_interval_hours: float = 6.0
    log_level: str = 'INFO'

    @property
    def has_duffel(self) -> bool:
        return bool(self.duffel_api_token)


def load_config() -> LoadedConfig:
    """Load settings from environment variables and/or config.env.

    We only read config.env; we never modify it.
    """
    loaded_from = load_dotenv_once()

    token = (os.getenv('DUFFEL_API_TOKEN') or '').strip()
    if token and _is_placeholder(token):
        logging.getLogger(__name__).warning(
            "DUFFEL_API_TOKEN contains a placeholder value. Please set your real token in config.env"
        )
        token = ''

    return LoadedConfig(
        duffel_api_token=token,
        loaded_from=loaded_from,
        duffel_base_url=(os.getenv('DUFFEL_BASE_URL') or DEFAULT_BASE_URL).strip().rstrip('/'),
        duffel_version=(os.getenv('DUFFEL_VERSION') or DEFAULT_API_VERSION).strip(),
        timeout=_env_float('DUFFEL_TIMEOUT', 30.0),
        max_pages=_env_int('DUFFEL_MAX_PAGES', 200),
        airline_cache_ttl_hours=_env_int('AIRLINE_CACHE_TTL_HOURS', 24),
        airline_batch_size=_env_int('AIRLINE_BATCH_SIZE', 10),
        cleanup_interval_hours=_env_float('AIRLINE_CACHE_CLEANUP_HOURS', 6.0),
        log_level=(os.getenv('LOG_LEVEL') or 'INFO').strip().upper(),
    )


def configure_logging(cfg: Optional[LoadedConfig] = None) -> None:
    """Apply LOG_LEVEL to the root logger."""
    cfg = cfg or load_config()
    level = getattr(logging, cfg.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def _mask(s: str) -> str:
    if not s:
        return ''
    if len(s) <= 6:
        return '*' * len(s)
    return f"{s[:3]}***{s[-3:]}"


def config_diagnostics() -> str:
    """Human-readable diagnostics for config/env loading (no secrets leaked)."""
    cfg = load_config()

    lines = []
    lines.append(f"CWD: {Path.cwd()}")
    lines.append(f"Resolved config.env: {dotenv_path()}")
    lines.append("Candidates searched:")
    for p in _candidate_dotenv_paths():
        lines.append(f"  - {p} (exists={p.is_file()})")

    lines.append(f"Loaded from: {cfg.loaded_from}")
    lines.append(f"DUFFEL_BASE_URL: {cfg.duffel_base_url}")
    lines.append(f"DUFFEL_VERSION: {cfg.duffel_version}")
    lines.append(f"DUFFEL_API_TOKEN: {_mask(cfg.duffel_api_token)}")
    lines.append(f"Airline cache TTL: {cfg.airline_cache_ttl_hours}h, batch size {cfg.airline_batch_size}")
    return "\n".join(lines)


def config_help_text() -> str:
    return (
        'No Duffel credentials configured. Create a config.env file containing:\n\n'
        '  DUFFEL_API_TOKEN=duffel_test_...\n\n'
        f'config.env location (first found): {dotenv_path()}\n'
    )
