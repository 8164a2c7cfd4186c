"""
Runtime configuration for PageSearch.

Settings come from environment variables, optionally seeded from a ``.env``
file in the working directory or the repository root.

Usage:
    from core.config import load_settings

    settings = load_settings()
    print(settings.data_dir, settings.max_download_bytes)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATA_DIR = 'data'
DEFAULT_MAX_DOWNLOAD_BYTES = 1_000_000
DEFAULT_DOWNLOAD_TIMEOUT = 30
DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 8185
DEFAULT_LOG_LEVEL = 'DEBUG'
DEFAULT_MAX_OPEN_STORES = 64


@dataclass
class Settings:
    """Process-wide settings."""
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES
    download_timeout: int = DEFAULT_DOWNLOAD_TIMEOUT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    log_json: bool = False
    max_open_stores: int = DEFAULT_MAX_OPEN_STORES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f'{name} must be an integer, got {raw!r}')


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build settings from the environment.

    Args:
        env_file: Explicit .env file to load. Defaults to the repository's .env

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    load_dotenv(env_file or Path(__file__).parent.parent / '.env')

    is_production = os.getenv('FLASK_ENV', 'development') == 'production'

    return Settings(
        data_dir=Path(os.getenv('PAGESEARCH_DATA_DIR', DEFAULT_DATA_DIR)),
        max_download_bytes=_env_int('PAGESEARCH_MAX_DOWNLOAD_BYTES', DEFAULT_MAX_DOWNLOAD_BYTES),
        download_timeout=_env_int('PAGESEARCH_DOWNLOAD_TIMEOUT', DEFAULT_DOWNLOAD_TIMEOUT),
        host=os.getenv('PAGESEARCH_HOST', DEFAULT_HOST),
        port=_env_int('PAGESEARCH_PORT', DEFAULT_PORT),
        log_level=os.getenv('PAGESEARCH_LOG_LEVEL', DEFAULT_LOG_LEVEL).upper(),
        log_json=_env_bool('PAGESEARCH_LOG_JSON', is_production),
        max_open_stores=_env_int('PAGESEARCH_MAX_OPEN_STORES', DEFAULT_MAX_OPEN_STORES),
    )
