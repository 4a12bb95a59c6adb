"""Restic backup run, dry-run, staging cleanup and snapshot listing.

A backup run executes these steps in order, aborting on the first failure:
1. Validate restic/B2 environment
2. Dump listed docker volumes into the staging directory
3. Initialize the restic repository if it does not exist yet
4. Build backup sources from files.list + staged volume archives
5. Create the restic snapshot
6. Check repository integrity
7. Apply retention policy (forget + prune)
"""

import json
import logging
import os
import shutil
import socket
import subprocess
import sys
from datetime import datetime
from typing import Any

from docker.errors import DockerException

from hrb.common import Settings, check_env, require_bin
from hrb.utils import read_list
from hrb.volumes import backup_docker_volume, check_volume_name, get_docker_client

logger = logging.getLogger(__name__)


def build_tags(settings: Settings, now: datetime | None = None) -> str:
    """Comma-joined restic tag value: name=<host>-<timestamp> plus extra tags."""
    now = now or datetime.now()
    backup_name = f"{socket.gethostname()}-{now.strftime('%Y%m%d_%H%M%S')}"
    return ','.join([f"name={backup_name}"] + settings.extra_tags)


def dump_volumes(settings: Settings, client=None) -> int:
    """Archive every listed docker volume into the staging directory.

    Volumes are dumped one at a time in list order.

    Returns:
        Exit code (0 = success)
    """
    volumes = list(read_list(settings.volumes_list))
    if not volumes:
        logger.info(f"No Docker volumes listed in {settings.volumes_list} - skipping.")
        return 0

    for volume in volumes:
        try:
            check_volume_name(volume)
        except ValueError as exc:
            logger.error(f"{exc} (in {settings.volumes_list})")
            return 1

    if client is None:
        client = get_docker_client()

    for volume in volumes:
        out = settings.volume_archive(volume)
        logger.info(f"Dumping volume '{volume}' => {out}")
        try:
            backup_docker_volume(client, volume, out, image=settings.helper_image)
        except (ValueError, DockerException) as exc:
            logger.error(f"Volume dump failed for '{volume}': {exc}")
            return 1
        logger.info(f"Volume '{volume}' backed up.")

    return 0


def ensure_repo(settings: Settings) -> int:
    """Initialize the restic repository when listing snapshots fails.

    Returns:
        Exit code (0 = repository usable)
    """
    logger.info("Checking restic repository...")
    probe = subprocess.run(
        ['restic', 'snapshots'],
        env=settings.environ,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    if probe.returncode == 0:
        logger.info("Repository ready")
        return 0

    logger.info("Initializing restic repo...")
    result = subprocess.run(['restic', 'init'], env=settings.environ)
    if result.returncode != 0:
        logger.error(f"Failed to initialize repository (exit {result.returncode})")
        return 1

    logger.info("Repository initialized successfully")
    return 0


def build_restic_sources(settings: Settings) -> list[str]:
    """Collect existing files.list entries and the staged volume directory.

    Raises:
        SystemExit: If there is nothing to back up
    """
    sources = []
    for entry in read_list(settings.files_list):
        if not os.path.exists(entry):
            logger.warning(f"path not found (skipped): {entry}")
            continue
        sources.append(entry)

    if settings.vol_archive_dir.is_dir() and any(settings.vol_archive_dir.glob('*.tar.gz')):
        sources.append(str(settings.vol_archive_dir))

    if not sources:
        logger.error(
            f"No sources to back up. Fill {settings.files_list} and/or {settings.volumes_list}."
        )
        sys.exit(1)

    return sources


def run_backup(settings: Settings, client=None) -> int:
    """Run a full backup cycle.

    Args:
        settings: Loaded settings
        client: Optional docker client (created on demand)

    Returns:
        Exit code (0 = success, restic's code if the snapshot fails)
    """
    check_env(settings)
    require_bin('restic')
    settings.vol_archive_dir.mkdir(parents=True, exist_ok=True)
    settings.config_archive_dir.mkdir(parents=True, exist_ok=True)

    exit_code = dump_volumes(settings, client)
    if exit_code != 0:
        return exit_code

    exit_code = ensure_repo(settings)
    if exit_code != 0:
        return exit_code

    sources = build_restic_sources(settings)

    backup_cmd = ['restic', 'backup', '--tag', build_tags(settings)]
    if settings.excludes_file.is_file():
        backup_cmd.extend(['--exclude-file', str(settings.excludes_file)])
    backup_cmd.extend(['--one-file-system', '--verbose'])
    backup_cmd.extend(sources)

    logger.info("Starting restic backup...")
    result = subprocess.run(backup_cmd, env=settings.environ)
    if result.returncode != 0:
        logger.error(f"Restic backup FAILED ({result.returncode})")
        return result.returncode
    logger.info("Restic backup completed.")

    logger.info("Running restic check...")
    result = subprocess.run(['restic', 'check', '--with-cache'], env=settings.environ)
    if result.returncode != 0:
        logger.error(f"Restic check FAILED ({result.returncode}), skipping prune")
        return 1
    logger.info("Restic check completed.")

    retention = settings.retention
    logger.info(
        f"Applying prune policy (D={retention.daily} W={retention.weekly} "
        f"M={retention.monthly} Y={retention.yearly})..."
    )
    prune_cmd = [
        'restic', 'forget', '--prune',
        '--keep-daily', str(retention.daily),
        '--keep-weekly', str(retention.weekly),
        '--keep-monthly', str(retention.monthly),
        '--keep-yearly', str(retention.yearly),
    ]
    result = subprocess.run(prune_cmd, env=settings.environ)
    if result.returncode != 0:
        logger.error(f"Prune failed with exit code: {result.returncode}")
        return 1
    logger.info("Prune complete")

    logger.info("Backup run finished successfully.")
    return 0


def dry_run(settings: Settings) -> int:
    """Print what a backup run would do. Writes nothing."""
    print(f"Would dump volumes from {settings.volumes_list}:")
    for volume in read_list(settings.volumes_list):
        print(f"  - {volume} => {settings.volume_archive(volume)}")
    print()

    print(f"Would back up these file paths from {settings.files_list}:")
    for entry in read_list(settings.files_list):
        print(f"  - {entry}")
    print()

    found = '(FOUND)' if settings.excludes_file.is_file() else '(not present)'
    print(f"Exclude file: {settings.excludes_file} {found}")

    retention = settings.retention
    print(
        f"Prune policy: daily={retention.daily}, weekly={retention.weekly}, "
        f"monthly={retention.monthly}, yearly={retention.yearly}"
    )
    return 0


def clean_staging(settings: Settings) -> int:
    """Remove everything under the staging directory."""
    logger.info(f"Cleaning {settings.staging_dir}...")
    if not settings.staging_dir.is_dir():
        return 0

    for child in settings.staging_dir.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()

    logger.info("Staging cleaned.")
    return 0


def list_snapshots(settings: Settings) -> int:
    """Print restic snapshots as a table.

    Returns:
        Exit code (0 = success)
    """
    check_env(settings)
    require_bin('restic')

    result = subprocess.run(
        ['restic', 'snapshots', '--json'],
        env=settings.environ,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        logger.error(f"restic snapshots failed with exit code {result.returncode}:")
        logger.error(result.stderr.strip())
        return 1

    try:
        snapshots: list[dict[str, Any]] = json.loads(result.stdout or '[]')
    except json.JSONDecodeError as exc:
        logger.error(f"Error parsing restic output: {exc}")
        return 1

    print(f"\nRestic snapshots ({len(snapshots)} found):")
    print(f"Repository: {settings.environ.get('RESTIC_REPOSITORY', 'Unknown')}\n")

    if not snapshots:
        print("No snapshots found.")
        return 0

    print(f"{'ID':<10} {'TIME':<26} {'HOST':<20} {'TAGS'}")
    print("-" * 90)

    for snapshot in snapshots:
        short_id = snapshot.get('short_id') or snapshot.get('id', 'N/A')[:8]
        created = snapshot.get('time', 'N/A')[:25]
        host = snapshot.get('hostname', 'N/A')
        tags = ','.join(snapshot.get('tags') or [])
        print(f"{short_id:<10} {created:<26} {host:<20} {tags}")

    print()
    return 0
