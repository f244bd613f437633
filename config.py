"""
Runtime configuration, read from the environment (and a .env file if present)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()  # Loads variables from .env

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


@dataclass
class Settings:
    host: str = '0.0.0.0'
    port: int = 10001
    downloads_dir: str = 'downloads'
    public_base_url: Optional[str] = None
    rate_limit: str = '100/15 minutes'
    max_chapters: int = 10
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    request_timeout: float = 30.0
    mirror_max_workers: int = 0  # 0 = one worker per page
    default_source: str = '1'
    default_language: str = 'en'
    log_level: str = 'INFO'
    cors_headers: dict = field(default_factory=lambda: {
        'Access-Control-Allow-Origin': '*',
        'Cross-Origin-Resource-Policy': 'cross-origin',
    })

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            host=os.getenv('HOST', '0.0.0.0'),
            port=_env_int('PORT', 10001),
            downloads_dir=os.getenv('DOWNLOADS_DIR', 'downloads'),
            public_base_url=os.getenv('PUBLIC_BASE_URL') or None,
            rate_limit=os.getenv('RATE_LIMIT', '100/15 minutes'),
            max_chapters=_env_int('MAX_CHAPTERS', 10),
            retry_attempts=_env_int('RETRY_ATTEMPTS', 3),
            retry_base_delay=_env_float('RETRY_BASE_DELAY', 1.0),
            request_timeout=_env_float('REQUEST_TIMEOUT', 30.0),
            mirror_max_workers=_env_int('MIRROR_MAX_WORKERS', 0),
            default_source=os.getenv('DEFAULT_SOURCE', '1'),
            default_language=os.getenv('DEFAULT_LANGUAGE', 'en'),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )
