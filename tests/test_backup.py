"""Tests for the backup run, dry-run, cleanup and snapshot listing."""

import json
import subprocess
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from docker.errors import ContainerError

from hrb.commands import backup
from hrb.commands.backup import (
    build_restic_sources,
    build_tags,
    clean_staging,
    dry_run,
    dump_volumes,
    ensure_repo,
    list_snapshots,
    run_backup,
)


def _stage_archive(settings, volume='app_data'):
    settings.vol_archive_dir.mkdir(parents=True, exist_ok=True)
    archive = settings.volume_archive(volume)
    archive.write_bytes(b'archive')
    return archive


def _snapshot(tree: Path) -> set:
    if not tree.exists():
        return set()
    return {str(p.relative_to(tree)) for p in tree.rglob('*')}


def test_build_tags(settings, monkeypatch):
    monkeypatch.setattr(backup.socket, 'gethostname', lambda: 'web01')

    tags = build_tags(settings, now=datetime(2024, 3, 9, 4, 5, 6))

    assert tags == 'name=web01-20240309_040506,prod,server'


def test_build_sources_skips_missing_paths(settings, tmp_path: Path):
    present = tmp_path / 'data'
    present.mkdir()
    settings.files_list.write_text(f"# data\n{present}\n{tmp_path / 'gone'}\n")
    _stage_archive(settings)

    sources = build_restic_sources(settings)

    assert sources == [str(present), str(settings.vol_archive_dir)]


def test_build_sources_ignores_staging_without_archives(settings, tmp_path: Path):
    present = tmp_path / 'data'
    present.mkdir()
    settings.files_list.write_text(f"{present}\n")
    settings.vol_archive_dir.mkdir(parents=True)
    (settings.vol_archive_dir / 'notes.txt').write_text('x')

    assert build_restic_sources(settings) == [str(present)]


def test_build_sources_empty_is_fatal(settings, tmp_path: Path):
    settings.files_list.write_text(f"{tmp_path / 'gone'}\n")

    with pytest.raises(SystemExit) as exc_info:
        build_restic_sources(settings)
    assert exc_info.value.code == 1


def test_run_with_nothing_to_back_up_never_calls_restic_backup(settings, fake_run, all_bins):
    with pytest.raises(SystemExit) as exc_info:
        run_backup(settings, client=MagicMock())

    assert exc_info.value.code == 1
    assert fake_run.commands('restic', 'backup') == []
    assert fake_run.commands('restic', 'forget') == []


def test_run_missing_credentials_is_fatal(settings, fake_run, all_bins):
    del settings.environ['RESTIC_PASSWORD']

    with pytest.raises(SystemExit) as exc_info:
        run_backup(settings, client=MagicMock())

    assert exc_info.value.code == 1
    assert fake_run.calls == []


def test_run_full_cycle_in_order(settings, fake_run, all_bins, tmp_path: Path):
    present = tmp_path / 'data'
    present.mkdir()
    settings.files_list.write_text(f"{present}\n")
    settings.volumes_list.write_text("app_data\n# old_volume\ndb_data\n")
    settings.excludes_file.write_text("*.tmp\n")
    client = MagicMock()

    assert run_backup(settings, client=client) == 0

    dumped = [call.kwargs['environment']['DEST'] for call in client.containers.run.call_args_list]
    assert dumped == ['app_data.tar.gz', 'db_data.tar.gz']

    assert [cmd[:2] for cmd in fake_run.calls] == [
        ['restic', 'snapshots'],
        ['restic', 'backup'],
        ['restic', 'check'],
        ['restic', 'forget'],
    ]

    backup_cmd = fake_run.calls[1]
    assert backup_cmd[2] == '--tag'
    assert backup_cmd[3].startswith('name=') and backup_cmd[3].endswith(',prod,server')
    assert backup_cmd[4:6] == ['--exclude-file', str(settings.excludes_file)]
    assert '--one-file-system' in backup_cmd
    # Helper containers are mocked, so no archives were staged
    assert backup_cmd[-1] == str(present)

    assert fake_run.calls[2] == ['restic', 'check', '--with-cache']
    assert fake_run.calls[3] == [
        'restic', 'forget', '--prune',
        '--keep-daily', '7',
        '--keep-weekly', '4',
        '--keep-monthly', '12',
        '--keep-yearly', '2',
    ]
    assert all(kwargs['env'] is settings.environ for kwargs in fake_run.kwargs)


def test_run_without_exclude_file(settings, fake_run, all_bins):
    _stage_archive(settings)

    assert run_backup(settings, client=MagicMock()) == 0

    backup_cmd = fake_run.commands('restic', 'backup')[0]
    assert '--exclude-file' not in backup_cmd
    assert backup_cmd[-1] == str(settings.vol_archive_dir)


def test_run_propagates_restic_backup_exit_code(settings, fake_run, all_bins):
    _stage_archive(settings)
    fake_run.codes[('restic', 'backup')] = 3

    assert run_backup(settings, client=MagicMock()) == 3
    assert fake_run.commands('restic', 'check') == []
    assert fake_run.commands('restic', 'forget') == []


def test_run_failed_check_skips_prune(settings, fake_run, all_bins):
    _stage_archive(settings)
    fake_run.codes[('restic', 'check')] = 1

    assert run_backup(settings, client=MagicMock()) == 1
    assert fake_run.commands('restic', 'forget') == []


def test_run_failed_prune(settings, fake_run, all_bins):
    _stage_archive(settings)
    fake_run.codes[('restic', 'forget')] = 12

    assert run_backup(settings, client=MagicMock()) == 1


def test_run_volume_dump_failure_aborts(settings, fake_run, all_bins, tmp_path: Path):
    settings.files_list.write_text(f"{tmp_path}\n")
    settings.volumes_list.write_text("app_data\ndb_data\n")
    client = MagicMock()
    client.containers.run.side_effect = ContainerError(
        'container', 1, 'sh -c tar', 'busybox', b'no such volume'
    )

    assert run_backup(settings, client=client) == 1
    assert client.containers.run.call_count == 1
    assert fake_run.calls == []


def test_dump_volumes_without_list_skips_docker(settings):
    client = MagicMock()

    assert dump_volumes(settings, client) == 0
    assert client.mock_calls == []


def test_dump_volumes_rejects_invalid_name_before_any_dump(settings):
    settings.volumes_list.write_text("app_data\n../escaped\n")
    client = MagicMock()

    assert dump_volumes(settings, client) == 1

    assert client.mock_calls == []
    assert not settings.staging_dir.exists()
    assert not (settings.staging_dir / 'escaped.tar.gz').exists()


def test_ensure_repo_initializes_when_probe_fails(settings, fake_run):
    fake_run.codes[('restic', 'snapshots')] = 1

    assert ensure_repo(settings) == 0
    assert fake_run.calls == [['restic', 'snapshots'], ['restic', 'init']]


def test_ensure_repo_init_failure(settings, fake_run):
    fake_run.codes[('restic', 'snapshots')] = 1
    fake_run.codes[('restic', 'init')] = 1

    assert ensure_repo(settings) == 1


def test_ensure_repo_existing(settings, fake_run):
    assert ensure_repo(settings) == 0
    assert fake_run.calls == [['restic', 'snapshots']]


def test_dry_run_writes_nothing(settings, fake_run, capsys, tmp_path: Path):
    settings.files_list.write_text(f"/etc/nginx\n# comment\n{tmp_path / 'gone'}\n")
    settings.volumes_list.write_text("app_data\n")
    before = _snapshot(tmp_path)

    assert dry_run(settings) == 0

    assert _snapshot(tmp_path) == before
    assert not settings.staging_dir.exists()
    assert fake_run.calls == []

    out = capsys.readouterr().out
    assert f"  - app_data => {settings.volume_archive('app_data')}" in out
    assert "  - /etc/nginx" in out
    assert f"Exclude file: {settings.excludes_file} (not present)" in out
    assert "Prune policy: daily=7, weekly=4, monthly=12, yearly=2" in out


def test_dry_run_reports_found_exclude_file(settings, capsys):
    settings.excludes_file.write_text("*.log\n")

    dry_run(settings)

    assert "(FOUND)" in capsys.readouterr().out


def test_clean_removes_staged_archives(settings):
    archive = _stage_archive(settings)
    (settings.staging_dir / 'leftover.tmp').write_text('x')

    assert clean_staging(settings) == 0

    assert not archive.exists()
    assert settings.staging_dir.is_dir()
    assert list(settings.staging_dir.iterdir()) == []


def test_clean_without_staging_dir(settings):
    assert clean_staging(settings) == 0


def test_list_snapshots_prints_table(settings, monkeypatch, all_bins, capsys):
    payload = [
        {
            'id': 'a1b2c3d4e5f6',
            'short_id': 'a1b2c3d4',
            'time': '2024-03-09T04:05:06.123456789Z',
            'hostname': 'web01',
            'tags': ['name=web01-20240309_040506', 'prod'],
        },
    ]

    def fake(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(payload), stderr='')

    monkeypatch.setattr(subprocess, 'run', fake)

    assert list_snapshots(settings) == 0

    out = capsys.readouterr().out
    assert "Restic snapshots (1 found):" in out
    assert "a1b2c3d4" in out
    assert "web01" in out
    assert "name=web01-20240309_040506,prod" in out


def test_list_snapshots_restic_failure(settings, fake_run, all_bins):
    fake_run.codes[('restic', 'snapshots')] = 1

    assert list_snapshots(settings) == 1
