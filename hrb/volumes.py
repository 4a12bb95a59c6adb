"""Docker volume archive and restore via throwaway helper containers.

Both directions run a minimal image with two mounts:
- the docker volume at /volume (read-only when archiving)
- the host directory holding the archive at /backup (read-only when restoring)

The archive's base name reaches the container through an environment
variable, never through the command string.
"""

import logging
import os
import re
import sys
from pathlib import Path

import docker
from docker.errors import DockerException, NotFound
from docker.types import Mount

logger = logging.getLogger(__name__)

BACKUP_SCRIPT = 'set -e; tar czf "/backup/${DEST}" -C /volume .'
RESTORE_SCRIPT = 'set -e; cd /volume && tar xzf "/backup/${SRC}"'

# Docker's own rule for volume names
VOLUME_NAME_RE = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_.-]+")


def get_docker_client() -> docker.DockerClient:
    """Connect to the local docker daemon.

    Raises:
        SystemExit: If the daemon is unreachable
    """
    try:
        return docker.from_env()
    except DockerException as exc:
        logger.error(f"Cannot connect to docker: {exc}")
        sys.exit(1)


def check_volume_name(volume: str) -> None:
    """Reject names docker would refuse, before they reach any host path.

    Raises:
        ValueError: If volume is not a valid docker volume name
    """
    if not VOLUME_NAME_RE.fullmatch(volume):
        raise ValueError(f"Invalid docker volume name: {volume!r}")


def split_archive_path(archive: Path | str) -> tuple[str, str]:
    """Split an archive path into (absolute parent dir, base name).

    Raises:
        ValueError: If the base name is empty, '.' or '/'
    """
    raw = str(archive)
    base = os.path.basename(raw)
    if base in ('', '.', '/'):
        raise ValueError(f"Invalid archive path: {raw}")
    return os.path.dirname(os.path.abspath(raw)), base


def backup_docker_volume(
    client: docker.DockerClient,
    volume: str,
    dest_tar: Path | str,
    image: str = 'busybox',
) -> None:
    """Write a tar.gz of a docker volume to dest_tar.

    Args:
        client: Docker client
        volume: Existing docker volume name
        dest_tar: Archive path on the host
        image: Helper image providing sh and tar

    Raises:
        ValueError: If volume is invalid or dest_tar has no usable base name
        DockerException: If the helper container fails
    """
    check_volume_name(volume)
    dest_dir, dest_base = split_archive_path(dest_tar)
    os.makedirs(dest_dir, exist_ok=True)

    client.containers.run(
        image,
        ['sh', '-c', BACKUP_SCRIPT],
        environment={'DEST': dest_base},
        mounts=[
            Mount(target='/volume', source=volume, type='volume', read_only=True),
            Mount(target='/backup', source=dest_dir, type='bind'),
        ],
        remove=True,
    )


def restore_docker_volume(
    client: docker.DockerClient,
    volume: str,
    src_tar: Path | str,
    image: str = 'busybox',
) -> None:
    """Extract a tar.gz into a docker volume, creating the volume if needed.

    An interrupted extraction leaves the volume partially populated.

    Raises:
        ValueError: If volume is invalid or src_tar has no usable base name
        DockerException: If volume creation or the helper container fails
    """
    check_volume_name(volume)
    src_dir, src_base = split_archive_path(src_tar)

    try:
        client.volumes.get(volume)
    except NotFound:
        logger.info(f"Creating docker volume '{volume}'")
        client.volumes.create(name=volume)

    client.containers.run(
        image,
        ['sh', '-c', RESTORE_SCRIPT],
        environment={'SRC': src_base},
        mounts=[
            Mount(target='/volume', source=volume, type='volume'),
            Mount(target='/backup', source=src_dir, type='bind', read_only=True),
        ],
        remove=True,
    )
