"""
Shared pytest fixtures for pgbackuper tests.

This module provides fixtures for:
- Database targets and settings
- Storage backends (local directory, S3 via moto)
- A fake pg_dump that writes dump files without a database
- Temporary file fixtures
"""

import os
import stat
import json
import subprocess
from unittest.mock import patch

import pytest
import boto3
from moto import mock_aws

from pgbackuper.models import (
    Settings,
    DatabaseTarget,
    BackupSettings,
    LocalSettings,
    AWSSettings,
    ImportSettings,
)
from pgbackuper.backup.storage import LocalStorage, S3Storage


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def db1():
    return DatabaseTarget(
        host='localhost',
        port=5432,
        username='backup',
        password='secret',
        database='db1'
    )


@pytest.fixture
def db2():
    return DatabaseTarget(
        host='localhost',
        port=5432,
        username='backup',
        password='secret',
        database='db2'
    )


@pytest.fixture
def backup_root(tmp_path):
    """Root of the local storage backend."""
    root = tmp_path / 'backups'
    root.mkdir()
    return root


@pytest.fixture
def scratch_dir(tmp_path):
    """Scratch directory for dump files."""
    scratch = tmp_path / 'scratch'
    scratch.mkdir()
    return scratch


@pytest.fixture
def local_settings(db1, db2, backup_root):
    """
    Two databases, local storage, prefix 'nightly', 7 days retention.
    """
    return Settings(
        databases=[db1, db2],
        local=LocalSettings(path=str(backup_root)),
        backup=BackupSettings(retention_days=7, backup_prefix='nightly')
    )


@pytest.fixture
def s3_settings(db1, db2):
    """
    Two databases, S3 storage in 'test-bucket', prefix 'nightly'.
    """
    return Settings(
        databases=[db1, db2],
        aws=AWSSettings(
            region='us-east-1',
            bucket='test-bucket',
            access_key_id='test_access_key',
            secret_access_key='test_secret_key'
        ),
        backup=BackupSettings(retention_days=7, backup_prefix='nightly')
    )


@pytest.fixture
def local_storage(backup_root):
    return LocalStorage(str(backup_root))


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    return S3Storage(
        bucket_name='test-bucket',
        region='us-east-1',
        access_key='test_key',
        secret_key='test_secret'
    )


@pytest.fixture
def import_settings(tmp_path):
    """Import settings pointing at an existing dump file."""
    dump_file = tmp_path / 'db1_2024-01-15_02-00-00.sql'
    dump_file.write_text('CREATE TABLE t (id int);\n')

    return ImportSettings(
        target_database=DatabaseTarget(
            host='localhost',
            username='restore',
            password='secret',
            database='restored'
        ),
        backup_path=str(dump_file),
        drop_existing=False
    )


@pytest.fixture
def config_file(tmp_path, backup_root):
    """Write an appsettings.json and return its path."""
    def _write(data=None):
        if data is None:
            data = {
                'databases': [
                    {
                        'host': 'localhost',
                        'port': 5432,
                        'username': 'backup',
                        'password': 'secret',
                        'database': 'db1',
                        'ssl_mode': 'disable'
                    }
                ],
                'local': {'path': str(backup_root)},
                'backup': {
                    'retention_days': 7,
                    'schedule': '0 2 * * *',
                    'backup_prefix': 'nightly'
                },
                'logging': {'level': 'info', 'format': 'text'}
            }
        path = tmp_path / 'appsettings.json'
        path.write_text(json.dumps(data))
        return str(path)

    return _write


def _output_path(command):
    return command[command.index('-f') + 1]


def _database_name(command):
    return command[command.index('-d') + 1]


@pytest.fixture
def fake_pg_dump():
    """
    Patch subprocess.run in the dumper with a fake pg_dump.

    The fake writes a small SQL file to the -f path and exits 0, except for
    databases listed in `failing`, which exit 1 without writing anything.
    Every call is recorded in `calls` as the database name.
    """
    class FakePgDump:
        def __init__(self):
            self.failing = set()
            self.calls = []

        def __call__(self, command, **kwargs):
            database = _database_name(command)
            self.calls.append(database)

            if database in self.failing:
                return subprocess.CompletedProcess(
                    command, 1,
                    stdout=f'pg_dump: error: connection to database "{database}" failed'
                )

            with open(_output_path(command), 'w') as f:
                f.write(f'-- dump of {database}\n')
            return subprocess.CompletedProcess(command, 0, stdout='pg_dump: dumping contents')

    fake = FakePgDump()
    with patch('pgbackuper.backup.dumper.subprocess.run', side_effect=fake):
        yield fake


@pytest.fixture
def make_artifact():
    """Return a helper creating root/relative_path with parent directories."""
    def _make(root, relative_path, content=b'-- dump\n'):
        path = os.path.join(str(root), relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(content)
        return path

    return _make


@pytest.fixture
def shell_tool(tmp_path):
    """
    Return a helper writing an executable /bin/sh script into tmp_path/bin.

    Used where the real subprocess call has to run, e.g. to check how tool
    output that is not valid UTF-8 is decoded.
    """
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()

    def _make(name, body):
        path = bin_dir / name
        path.write_text('#!/bin/sh\n' + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def latin1_pg_dump(shell_tool):
    """A pg_dump script that writes the -f file and logs a Latin-1 table name."""
    return shell_tool('pg_dump', r'''out=""
while [ $# -gt 0 ]; do
    if [ "$1" = "-f" ]; then
        out="$2"
    fi
    shift
done
echo '-- dump' > "$out"
printf 'pg_dump: dumping contents of table "public.caf\351"\n'
exit 0
''')
