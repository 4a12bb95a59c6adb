"""Encrypted disaster-recovery bundle of this tool's own configuration.

make-config-backup:
1. Tar the env file, lists, excludes, the hrb entry point, the cron file
   and the settings file
2. Encrypt with openssl (aes-256-cbc, salted pbkdf2)
3. Shred the plaintext tar
4. Upload: B2 CLI if configured, else into the restic repo, else keep local

decrypt-config-backup:
1. Decrypt and extract into a fresh temporary directory
2. With --restore and confirmation, copy files back to their live locations
"""

import logging
import os
import shutil
import subprocess
import sys
import tarfile
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from hrb.common import Settings, require_bin

logger = logging.getLogger(__name__)

PASSPHRASE_VAR = 'CONFIG_ARCHIVE_PASSPHRASE'
UPLOAD_URL_VAR = 'CONFIG_BACKUP_B2_URL'


def bundle_sources(settings: Settings) -> list[Path]:
    """Configuration files to bundle, in a fixed order."""
    sources = [
        settings.env_file,
        settings.files_list,
        settings.volumes_list,
        settings.excludes_file,
        settings.script_path,
        settings.cron_file,
    ]
    if settings.config_file is not None:
        sources.append(settings.config_file)
    return sources


def _archive_name(path: Path) -> str:
    return os.path.relpath(os.path.realpath(path), '/')


def write_bundle_tar(settings: Settings, tarball: Path) -> list[str]:
    """Write the plaintext config tar.gz (owner-only permissions).

    Absent paths are left out.

    Returns:
        Archive member names that were added
    """
    added = []
    fd = os.open(tarball, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as raw, tarfile.open(fileobj=raw, mode='w:gz') as tar:
        for path in bundle_sources(settings):
            real = os.path.realpath(path)
            if not os.path.exists(real):
                logger.debug(f"Not bundling absent path: {path}")
                continue
            arcname = _archive_name(path)
            tar.add(real, arcname=arcname)
            added.append(arcname)
    return added


def openssl_command(settings: Settings, src: Path, dest: Path, decrypt: bool = False) -> list[str]:
    """Build the openssl enc argument list.

    The passphrase is read from the environment when set; otherwise openssl
    prompts on the terminal.
    """
    cmd = ['openssl', 'enc']
    if decrypt:
        cmd.append('-d')
    cmd.append('-aes-256-cbc')
    if not decrypt:
        cmd.append('-salt')
    cmd.extend(['-pbkdf2', '-iter', str(settings.pbkdf2_iterations)])
    if settings.environ.get(PASSPHRASE_VAR):
        cmd.extend(['-pass', f'env:{PASSPHRASE_VAR}'])
    cmd.extend(['-in', str(src), '-out', str(dest)])
    return cmd


def secure_delete(path: Path) -> None:
    """Shred a file, falling back to a plain delete."""
    if shutil.which('shred'):
        result = subprocess.run(['shred', '-u', str(path)])
        if result.returncode == 0:
            return
        logger.warning(f"shred failed (exit {result.returncode}), removing {path} without overwrite")
    path.unlink(missing_ok=True)


def parse_b2_url(url: str) -> tuple[str, str]:
    """Split b2://bucket/prefix into (bucket, prefix)."""
    bucket, _, prefix = url.removeprefix('b2://').partition('/')
    return bucket, prefix.strip('/')


def upload_bundle(settings: Settings, enc: Path) -> int:
    """Ship the encrypted bundle off-box.

    Returns:
        Exit code (0 = uploaded or kept locally)
    """
    env = settings.environ
    b2_url = env.get(UPLOAD_URL_VAR)

    if b2_url and shutil.which('b2'):
        bucket, prefix = parse_b2_url(b2_url)
        key = f"{prefix}/{enc.name}" if prefix else enc.name
        logger.info(f"Uploading encrypted bundle to {b2_url}...")

        result = subprocess.run(['b2', 'authorize-account'], env=env)
        if result.returncode != 0:
            logger.error(f"b2 authorize-account failed (exit {result.returncode})")
            return 1

        result = subprocess.run(['b2', 'upload-file', bucket, str(enc), key], env=env)
        if result.returncode != 0:
            logger.error(f"b2 upload-file failed (exit {result.returncode})")
            return 1

        logger.info("Upload via B2 CLI complete.")
        return 0

    if env.get('RESTIC_REPOSITORY') and shutil.which('restic'):
        logger.info("Backing up config bundle into restic repo...")
        result = subprocess.run(['restic', 'backup', '--tag', 'config-bundle', str(enc)], env=env)
        if result.returncode != 0:
            logger.error(f"Restic backup of config bundle failed (exit {result.returncode})")
            return 1
        logger.info("Config bundle stored in restic.")
        return 0

    logger.info(f"No upload target configured; keep {enc} safe (copy off-box).")
    return 0


def make_config_backup(settings: Settings) -> int:
    """Create and upload an encrypted config bundle.

    Returns:
        Exit code (0 = success)
    """
    require_bin('openssl')
    settings.config_archive_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now().strftime('%Y%m%d_%H%M%S')
    tarball = settings.config_archive_dir / f"restic-config-{ts}.tar.gz"
    enc = tarball.with_name(f"{tarball.name}.enc")

    logger.info(f"Bundling config into {tarball} ...")
    added = write_bundle_tar(settings, tarball)
    logger.info(f"Bundled {len(added)} path(s): {', '.join(added)}")

    mode = 'env passphrase' if settings.environ.get(PASSPHRASE_VAR) else 'will prompt for passphrase'
    logger.info(f"Encrypting archive ({mode}) -> {enc}")
    result = subprocess.run(openssl_command(settings, tarball, enc), env=settings.environ)
    secure_delete(tarball)

    if result.returncode != 0:
        logger.error(f"Encryption failed (exit {result.returncode})")
        enc.unlink(missing_ok=True)
        return 1

    enc.chmod(0o600)
    logger.info(f"Encrypted config bundle written to {enc}")

    return upload_bundle(settings, enc)


def terminal_confirm(prompt: str) -> bool:
    """Ask a yes/no question on the terminal. Defaults to no."""
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip() in ('y', 'Y')


def print_tree(root: Path) -> None:
    """Print every file below root, relative to it."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            print(f"  {os.path.relpath(os.path.join(dirpath, name), root)}")


def restore_config_files(settings: Settings, outdir: Path) -> None:
    """Copy extracted configuration over the live files and fix permissions."""
    bundled_dir = outdir / _archive_name(settings.restic_dir)
    if bundled_dir.is_dir():
        shutil.copytree(bundled_dir, settings.restic_dir, dirs_exist_ok=True)
        logger.info(f"Restored {settings.restic_dir}")

    for live in (settings.script_path, settings.cron_file, settings.config_file):
        if live is None:
            continue
        bundled = outdir / _archive_name(live)
        if bundled.is_file():
            live.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(bundled, live)
            logger.info(f"Restored {live}")

    if settings.env_file.exists():
        settings.env_file.chmod(0o600)
    if settings.script_path.exists():
        settings.script_path.chmod(0o755)


def decrypt_config_backup(
    settings: Settings,
    enc_file: str,
    restore: bool = False,
    confirm: Callable[[str], bool] | None = None,
) -> int:
    """Decrypt a config bundle and optionally restore it in place.

    Args:
        settings: Loaded settings
        enc_file: Path to .tar.gz.enc bundle
        restore: Copy files to their live locations after confirmation
        confirm: Yes/no prompt (default: terminal prompt)

    Returns:
        Exit code (0 = success)
    """
    require_bin('openssl')
    enc_path = Path(enc_file)
    if not enc_path.is_file():
        logger.error(f"File not found: {enc_file}")
        sys.exit(1)

    ts = datetime.now().strftime('%Y%m%d_%H%M%S')
    # Created 0700 and never reused
    tmpdir = Path(tempfile.mkdtemp(prefix=f"restic-config-restore-{ts}-"))
    outdir = tmpdir / 'decrypted'
    tarfile_path = tmpdir / 'bundle.tar.gz'
    outdir.mkdir()

    logger.info(f"Decrypting {enc_file}...")
    result = subprocess.run(
        openssl_command(settings, enc_path, tarfile_path, decrypt=True),
        env=settings.environ,
    )
    if result.returncode != 0:
        logger.error(f"Decryption failed (exit {result.returncode}); wrong passphrase or corrupt bundle")
        tarfile_path.unlink(missing_ok=True)
        return 1

    logger.info(f"Extracting contents to {outdir}...")
    try:
        with tarfile.open(tarfile_path, 'r:gz') as tar:
            tar.extractall(outdir, filter='data')
    except tarfile.TarError as exc:
        logger.error(f"Failed to extract bundle: {exc}")
        return 1
    finally:
        tarfile_path.unlink(missing_ok=True)

    logger.info(f"Decrypted configuration extracted to: {outdir}")
    print_tree(outdir)

    if not restore:
        return 0

    confirm = confirm or terminal_confirm
    prompt = (
        f"This will overwrite files under {settings.restic_dir}, {settings.script_path} "
        f"and {settings.cron_file}. Continue? [y/N] "
    )
    if not confirm(prompt):
        logger.info(f"Skipped restoring; files remain in {outdir}.")
        return 0

    logger.info("Restoring configuration to system paths...")
    restore_config_files(settings, outdir)
    logger.info("Configuration restored.")
    return 0
