"""Service configuration read from environment variables.

A `.env` file in the working directory is loaded first, if there is one.
"""
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

SECRET_MARKERS = ('secret', 'password', 'api_key', 'apikey', 'token')


def _env(environ: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = environ.get(name)
    if value is None or value == '':
        return default
    return value


def _to_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_origins(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(',') if part.strip())


def redact(data: Mapping[str, object]) -> dict:
    """Copy of `data` with secret-looking keys masked."""
    out = {}
    for key, value in data.items():
        if value is not None and any(marker in key.lower() for marker in SECRET_MARKERS):
            out[key] = '[REDACTED]'
        else:
            out[key] = value
    return out


@dataclass(frozen=True)
class Settings:
    env: str = 'development'
    port: int = 5050
    public_base_url: str = 'http://localhost:5050'
    cors_origins: Tuple[str, ...] = ()

    upload_field_name: str = 'image'
    max_file_size_bytes: int = 5 * 1024 * 1024

    root_dir: Path = field(default_factory=Path.cwd)
    upload_dir: str = 'uploads'
    processed_dir: str = 'processed'
    database_path: Optional[str] = 'cartoonify.db'

    ai_style_api_url: Optional[str] = None
    ai_style_api_key: Optional[str] = None
    ai_style_timeout_ms: int = 120_000
    ai_style_prompt_pixar_3d: Optional[str] = None

    log_level: str = 'INFO'

    @property
    def is_production(self) -> bool:
        return self.env == 'production'

    @property
    def upload_abs_dir(self) -> Path:
        return (Path(self.root_dir) / self.upload_dir).resolve()

    @property
    def processed_abs_dir(self) -> Path:
        return (Path(self.root_dir) / self.processed_dir).resolve()

    @property
    def database_abs_path(self) -> Optional[Path]:
        if not self.database_path:
            return None
        return (Path(self.root_dir) / self.database_path).resolve()

    def describe(self) -> dict:
        """Settings as a plain dict, safe to log."""
        data = asdict(self)
        data['root_dir'] = str(self.root_dir)
        data['cors_origins'] = list(self.cors_origins)
        return redact(data)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build `Settings` from `environ` (defaults to `os.environ` after loading `.env`)."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    defaults = Settings()
    return Settings(
        env=_env(environ, 'FLASK_ENV', defaults.env),
        port=_to_int(_env(environ, 'PORT'), defaults.port),
        public_base_url=_env(environ, 'PUBLIC_BASE_URL', defaults.public_base_url).rstrip('/'),
        cors_origins=parse_origins(_env(environ, 'CORS_ORIGIN')),
        upload_field_name=_env(environ, 'UPLOAD_FIELD_NAME', defaults.upload_field_name),
        max_file_size_bytes=_to_int(_env(environ, 'MAX_FILE_SIZE_BYTES'), defaults.max_file_size_bytes),
        root_dir=Path(_env(environ, 'ROOT_DIR', str(defaults.root_dir))),
        upload_dir=_env(environ, 'UPLOAD_DIR', defaults.upload_dir),
        processed_dir=_env(environ, 'PROCESSED_DIR', defaults.processed_dir),
        # an explicitly empty DATABASE_PATH turns persistence off
        database_path=environ.get('DATABASE_PATH', defaults.database_path) or None,
        ai_style_api_url=_env(environ, 'AI_STYLE_API_URL'),
        ai_style_api_key=_env(environ, 'AI_STYLE_API_KEY'),
        ai_style_timeout_ms=_to_int(_env(environ, 'AI_STYLE_TIMEOUT_MS'), defaults.ai_style_timeout_ms),
        ai_style_prompt_pixar_3d=_env(environ, 'AI_STYLE_PROMPT_PIXAR_3D'),
        log_level=_env(environ, 'LOG_LEVEL', defaults.log_level).upper(),
    )
