"""Docker volume restore commands."""

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from docker.errors import DockerException

from hrb.common import Settings, check_env, require_bin
from hrb.volumes import check_volume_name, get_docker_client, restore_docker_volume

logger = logging.getLogger(__name__)


def restore_volume(settings: Settings, volume: str, archive: str, client=None) -> int:
    """Restore a local tar.gz archive into a docker volume.

    Returns:
        Exit code (0 = success)
    """
    try:
        check_volume_name(volume)
    except ValueError as exc:
        logger.error(str(exc))
        return 1

    if client is None:
        client = get_docker_client()

    logger.info(f"Restoring '{archive}' into Docker volume '{volume}'...")
    try:
        restore_docker_volume(client, volume, archive, image=settings.helper_image)
    except (ValueError, DockerException) as exc:
        logger.error(f"Restore failed for volume '{volume}': {exc}")
        return 1

    logger.info(f"Restore complete into volume: {volume}")
    return 0


def restore_volume_from_repo(
    settings: Settings,
    volume: str,
    snapshot: str = 'latest',
    client=None,
) -> int:
    """Fetch a volume archive from a restic snapshot and restore it.

    Workflow:
    1. Stream <volume>.tar.gz out of the snapshot with `restic dump`
    2. Restore it into the docker volume
    3. Remove the temporary directory (always)

    Args:
        settings: Loaded settings
        volume: Docker volume name
        snapshot: Snapshot ID or 'latest'
        client: Optional docker client (created on demand)

    Returns:
        Exit code (0 = success)
    """
    check_env(settings)
    require_bin('restic')

    try:
        check_volume_name(volume)
    except ValueError as exc:
        logger.error(str(exc))
        return 1

    repo_path = settings.volume_repo_path(volume)
    tmpdir = Path(tempfile.mkdtemp(prefix='hrb-restore-'))
    outfile = tmpdir / f"{volume}.tar.gz"

    try:
        logger.info(f"Fetching '{repo_path}' from snapshot '{snapshot}'...")
        with outfile.open('wb') as out:
            result = subprocess.run(
                ['restic', 'dump', snapshot, repo_path],
                env=settings.environ,
                stdout=out,
            )

        if result.returncode != 0:
            logger.error(
                f"{repo_path} not found in snapshot {snapshot}. "
                f"Try: restic ls {snapshot} | grep volumes/"
            )
            return 1

        if client is None:
            client = get_docker_client()

        logger.info(f"Restoring into Docker volume '{volume}'...")
        try:
            restore_docker_volume(client, volume, outfile, image=settings.helper_image)
        except DockerException as exc:
            logger.error(f"Restore failed for volume '{volume}': {exc}")
            return 1

        logger.info(f"Restore complete for volume '{volume}'.")
        return 0

    finally:
        shutil.rmtree(tmpdir)

