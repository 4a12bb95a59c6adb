"""Shared utilities for host backup operations.

This module provides common functionality used by all commands:
- Settings file loading and validation
- Env file merging (restic/B2 credentials)
- Required environment and binary checks
- Logging setup (console + append-only log file)
"""

import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/restic/config.yaml'

REQUIRED_ENV = ['RESTIC_REPOSITORY', 'RESTIC_PASSWORD', 'B2_ACCOUNT_ID', 'B2_ACCOUNT_KEY']

CONSOLE_FORMAT = '[%(levelname)s] %(message)s'
FILE_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
FILE_DATEFMT = '%Y-%m-%dT%H:%M:%S%z'


@dataclass
class Retention:
    """Keep-counts handed to `restic forget --prune`."""

    daily: int = 7
    weekly: int = 4
    monthly: int = 12
    yearly: int = 2


@dataclass
class Settings:
    """Configuration loaded once at startup and passed to every command."""

    restic_dir: Path
    env_file: Path
    files_list: Path
    volumes_list: Path
    excludes_file: Path
    staging_dir: Path
    config_archive_dir: Path
    log_dir: Path
    lock_file: Path
    cron_file: Path
    script_path: Path
    retention: Retention = field(default_factory=Retention)
    extra_tags: list[str] = field(default_factory=lambda: ['prod', 'server'])
    helper_image: str = 'busybox'
    pbkdf2_iterations: int = 10000
    config_file: Path | None = None
    environ: dict[str, str] = field(default_factory=dict)
    vol_archive_dir: Path = field(init=False)
    volume_repo_dir: str = field(init=False)

    def __post_init__(self):
        self.staging_dir = Path(os.path.abspath(self.staging_dir))
        self.vol_archive_dir = self.staging_dir / 'volumes'
        # Absolute path restic records for the staged volume archives
        parts = [p for p in str(self.vol_archive_dir).split('/') if p]
        self.volume_repo_dir = '/' + '/'.join(parts)

    def volume_archive(self, volume: str) -> Path:
        """Staging location of a volume's archive."""
        return self.vol_archive_dir / f"{volume}.tar.gz"

    def volume_repo_path(self, volume: str) -> str:
        """Path of a volume's archive inside a restic snapshot."""
        return f"{self.volume_repo_dir}/{volume}.tar.gz"


def _parse_retention(raw: dict) -> Retention:
    if not isinstance(raw, dict):
        logger.error("Config field 'retention' must be a mapping")
        sys.exit(1)

    values = {}
    for key in ('daily', 'weekly', 'monthly', 'yearly'):
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            logger.error(f"Retention '{key}' must be a non-negative integer, got: {value!r}")
            sys.exit(1)
        values[key] = value

    return Retention(**values)


def _parse_iterations(raw) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        logger.error(f"Config field 'pbkdf2Iterations' must be a positive integer, got: {raw!r}")
        sys.exit(1)
    return raw


def _parse_tags(raw) -> list[str]:
    if isinstance(raw, str):
        return [tag.strip() for tag in raw.split(',') if tag.strip()]
    if isinstance(raw, list):
        return [str(tag).strip() for tag in raw if str(tag).strip()]
    logger.error(f"Config field 'extraTags' must be a list or string, got: {raw!r}")
    sys.exit(1)


def load_settings(
    config_path: str = DEFAULT_CONFIG_PATH,
    environ: dict[str, str] | None = None,
    script_path: str | None = None,
) -> Settings:
    """Load settings from YAML file and merge the env file.

    The settings file is optional; every key has a default. Values from the
    env file override the process environment in `Settings.environ`.

    Args:
        config_path: Path to settings file
        environ: Base environment (default: os.environ)
        script_path: Location of the running entry point (default: sys.argv[0])

    Returns:
        Settings instance

    Raises:
        SystemExit: If settings file is invalid
    """
    path = Path(config_path)
    config = {}

    if path.exists():
        try:
            with path.open('r', encoding='utf-8') as f:
                config = yaml.safe_load(f) or {}
        except Exception as exc:
            logger.error(f"Failed to parse config file: {exc}")
            sys.exit(1)

        if not isinstance(config, dict):
            logger.error(f"Config file must contain a mapping: {config_path}")
            sys.exit(1)

    restic_dir = Path(config.get('resticDir', '/etc/restic'))

    settings = Settings(
        restic_dir=restic_dir,
        env_file=Path(config.get('envFile', restic_dir / 'env')),
        files_list=Path(config.get('filesList', restic_dir / 'files.list')),
        volumes_list=Path(config.get('volumesList', restic_dir / 'volumes.list')),
        excludes_file=Path(config.get('excludesFile', restic_dir / 'excludes.txt')),
        staging_dir=Path(config.get('stagingDir', '/var/backups/staging')),
        config_archive_dir=Path(config.get('configArchiveDir', '/var/backups/restic-config')),
        log_dir=Path(config.get('logDir', '/var/log/backup')),
        lock_file=Path(config.get('lockFile', '/var/lock/backup-to-b2.lock')),
        cron_file=Path(config.get('cronFile', '/etc/cron.d/backup-to-b2')),
        script_path=Path(
            config.get('scriptPath') or script_path or os.path.realpath(sys.argv[0])
        ),
        retention=_parse_retention(config.get('retention', {})),
        helper_image=config.get('helperImage', 'busybox'),
        pbkdf2_iterations=_parse_iterations(config.get('pbkdf2Iterations', 10000)),
        config_file=path if path.exists() else None,
    )
    if 'extraTags' in config:
        settings.extra_tags = _parse_tags(config['extraTags'])

    env = dict(os.environ if environ is None else environ)
    if settings.env_file.exists():
        file_values = dotenv_values(settings.env_file)
        env.update({key: value for key, value in file_values.items() if value is not None})
    settings.environ = env

    return settings


def check_env(settings: Settings) -> None:
    """Ensure restic and B2 credentials are present.

    Raises:
        SystemExit: If any required variable is missing or empty
    """
    missing = [name for name in REQUIRED_ENV if not settings.environ.get(name)]
    if missing:
        logger.error(f"Missing required environment: {', '.join(missing)} (set in {settings.env_file})")
        sys.exit(1)


def require_bin(name: str) -> None:
    """Exit if an external binary is not on PATH."""
    if shutil.which(name) is None:
        logger.error(f"Missing required binary: {name}")
        sys.exit(1)


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    """Configure console and append-only file logging.

    Args:
        log_dir: Directory holding backup.log
        verbose: Enable DEBUG level
    """
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers: list[logging.Handler] = [console]

    file_error = None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / 'backup.log', mode='a', encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
        handlers.append(file_handler)
    except OSError as exc:
        file_error = exc

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=handlers,
        force=True,
    )

    if file_error:
        logger.warning(f"Cannot write log file in {log_dir}: {file_error}")
