#!/usr/bin/env python3
"""hrb - restic backups of host files and docker volumes to Backblaze B2."""

import argparse
import sys

from hrb.common import DEFAULT_CONFIG_PATH, load_settings, setup_logging
from hrb.lock import acquire_lock

COMMANDS = (
    'run',
    'dry-run',
    'clean',
    'snapshots',
    'restore-volume',
    'restore-volume-from-repo',
    'make-config-backup',
    'decrypt-config-backup',
)

EPILOG = """\
Config files (defaults, see -c):
  /etc/restic/env           RESTIC_REPOSITORY, RESTIC_PASSWORD, B2_ACCOUNT_ID, B2_ACCOUNT_KEY
  /etc/restic/files.list    absolute paths (one per line), '#' for comments
  /etc/restic/volumes.list  docker volume names (one per line), '#' for comments
  /etc/restic/excludes.txt  optional restic exclude patterns

Environment (optional):
  CONFIG_ARCHIVE_PASSPHRASE  passphrase for config bundles (otherwise prompted)
  CONFIG_BACKUP_B2_URL       e.g. b2://my-bucket/config-bundles
"""


class CommandParser(argparse.ArgumentParser):
    """ArgumentParser that exits 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def add_global_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-c', '--config',
        default=DEFAULT_CONFIG_PATH,
        help=f'Path to settings file (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable debug logging'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with subcommands."""
    parser = CommandParser(
        prog='hrb',
        description='Restic backups of host files and docker volumes to Backblaze B2',
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False
    )
    add_global_options(parser)

    subparsers = parser.add_subparsers(dest='command', parser_class=CommandParser)

    subparsers.add_parser(
        'run',
        help='Dump listed volumes, back up files + volumes with restic, check and prune'
    )
    subparsers.add_parser('dry-run', help='Show intended sources (no repo writes)')
    subparsers.add_parser('clean', help='Remove staged volume tarballs')
    subparsers.add_parser('snapshots', help='List restic snapshots')

    restore_volume = subparsers.add_parser(
        'restore-volume',
        help='Restore a tar.gz archive into a docker volume (no restic)'
    )
    restore_volume.add_argument('volume', help='Docker volume name')
    restore_volume.add_argument('archive', help='Path to backup .tar.gz')

    restore_repo = subparsers.add_parser(
        'restore-volume-from-repo',
        help="Restore a volume by pulling its tar.gz from the restic repo"
    )
    restore_repo.add_argument('volume', help='Docker volume name')
    restore_repo.add_argument(
        'snapshot',
        nargs='?',
        default='latest',
        help="Snapshot ID or 'latest' (default: latest)"
    )

    subparsers.add_parser(
        'make-config-backup',
        help='Create encrypted tar of env/lists/excludes/script (+ optional upload)'
    )

    decrypt = subparsers.add_parser(
        'decrypt-config-backup',
        help='Decrypt and optionally restore a config bundle'
    )
    decrypt.add_argument('file', help='Encrypted bundle (.tar.gz.enc)')
    decrypt.add_argument(
        '--restore',
        action='store_true',
        help='Copy decrypted files back to their live locations (asks first)'
    )

    return parser


def find_command(argv: list[str]) -> str | None:
    """Return the subcommand named in argv, skipping global options."""
    pre_parser = CommandParser(prog="hrb", add_help=False, allow_abbrev=False)
    add_global_options(pre_parser)
    _, rest = pre_parser.parse_known_args(argv)
    if rest and rest[0] in COMMANDS:
        return rest[0]
    return None


def dispatch(args: argparse.Namespace, settings) -> int:
    """Run the selected command and return its exit code."""
    if args.command == 'run':
        from hrb.commands.backup import run_backup
        return run_backup(settings)
    if args.command == 'dry-run':
        from hrb.commands.backup import dry_run
        return dry_run(settings)
    if args.command == 'clean':
        from hrb.commands.backup import clean_staging
        return clean_staging(settings)
    if args.command == 'snapshots':
        from hrb.commands.backup import list_snapshots
        return list_snapshots(settings)
    if args.command == 'restore-volume':
        from hrb.commands.volume import restore_volume
        return restore_volume(settings, args.volume, args.archive)
    if args.command == 'restore-volume-from-repo':
        from hrb.commands.volume import restore_volume_from_repo
        return restore_volume_from_repo(settings, args.volume, args.snapshot)
    if args.command == 'make-config-backup':
        from hrb.commands.config_bundle import make_config_backup
        return make_config_backup(settings)
    if args.command == 'decrypt-config-backup':
        from hrb.commands.config_bundle import decrypt_config_backup
        return decrypt_config_backup(settings, args.file, restore=args.restore)
    return 1


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    argv = ['dry-run' if arg == '--dry-run' else arg for arg in argv]

    parser = create_parser()
    if find_command(argv) is None:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    setup_logging(settings.log_dir, args.verbose)

    # Held until the process exits
    lock_file = acquire_lock(settings.lock_file)
    try:
        return dispatch(args, settings)
    finally:
        lock_file.close()


if __name__ == '__main__':
    sys.exit(main())
