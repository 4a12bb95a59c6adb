"""
Test fixtures for hrb tests.

Provides a Settings instance rooted in a temporary directory and a recorder
standing in for subprocess.run.
"""

import logging
import os
import subprocess
from pathlib import Path

import pytest

from hrb.common import Settings


BASE_ENV = {
    'RESTIC_REPOSITORY': 'b2:test-bucket:host',
    'RESTIC_PASSWORD': 'restic-secret',
    'B2_ACCOUNT_ID': 'account-id',
    'B2_ACCOUNT_KEY': 'account-key',
}


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo setup_logging() between tests."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path under tmp_path."""
    restic_dir = tmp_path / 'etc' / 'restic'
    restic_dir.mkdir(parents=True)

    env = dict(BASE_ENV)
    env['PATH'] = os.environ.get('PATH', '')

    return Settings(
        restic_dir=restic_dir,
        env_file=restic_dir / 'env',
        files_list=restic_dir / 'files.list',
        volumes_list=restic_dir / 'volumes.list',
        excludes_file=restic_dir / 'excludes.txt',
        staging_dir=tmp_path / 'var' / 'backups' / 'staging',
        config_archive_dir=tmp_path / 'var' / 'backups' / 'restic-config',
        log_dir=tmp_path / 'var' / 'log' / 'backup',
        lock_file=tmp_path / 'var' / 'lock' / 'backup-to-b2.lock',
        cron_file=tmp_path / 'etc' / 'cron.d' / 'backup-to-b2',
        script_path=tmp_path / 'usr' / 'local' / 'bin' / 'hrb',
        environ=env,
    )


class FakeRun:
    """Records subprocess.run calls and returns scripted exit codes.

    Exit codes are looked up by the longest matching command prefix, e.g.
    {('restic', 'snapshots'): 1}.
    """

    def __init__(self, codes: dict[tuple, int] | None = None):
        self.codes = codes or {}
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []

    def __call__(self, cmd, *args, **kwargs):
        self.calls.append(list(cmd))
        self.kwargs.append(kwargs)
        code = 0
        best = -1
        for prefix, rc in self.codes.items():
            if tuple(cmd[:len(prefix)]) == prefix and len(prefix) > best:
                code, best = rc, len(prefix)
        return subprocess.CompletedProcess(cmd, code, stdout='', stderr='')

    def commands(self, *prefix) -> list[list[str]]:
        return [cmd for cmd in self.calls if tuple(cmd[:len(prefix)]) == prefix]


@pytest.fixture
def fake_run(monkeypatch) -> FakeRun:
    """Replace subprocess.run with a recorder; every command succeeds."""
    recorder = FakeRun()
    monkeypatch.setattr(subprocess, 'run', recorder)
    return recorder


@pytest.fixture
def all_bins(monkeypatch):
    """Pretend every external binary is installed."""
    import shutil
    monkeypatch.setattr(shutil, 'which', lambda name: f'/usr/bin/{name}')
