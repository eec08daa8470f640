"""
Unit tests for the command line runner (run.py).
"""

import signal
from unittest.mock import MagicMock, patch

import pytest

import run


@pytest.fixture
def app_config(scratch_dir):
    """Runtime config with a scratch temp dir and console-only logging."""
    cfg = MagicMock()
    cfg.TEMP_DIR = str(scratch_dir)
    cfg.LOG_DIR = None
    cfg.PSQL_PATH = 'psql'
    cfg.SCHEDULER_TIMEZONE = 'UTC'
    with patch('run.get_config', return_value=cfg):
        yield cfg


class TestParseArgs:
    """Test command line parsing."""

    def test_defaults(self):
        args = run.parse_args([])

        assert args.config == 'appsettings.json'
        assert args.once is False
        assert args.import_backup is False

    def test_flags(self):
        args = run.parse_args(['--config', '/etc/pgbackuper.json', '--once'])

        assert args.config == '/etc/pgbackuper.json'
        assert args.once is True

    def test_import_flag(self):
        assert run.parse_args(['--import']).import_backup is True


class TestMain:
    """Test main() for each run mode."""

    def test_missing_config(self, tmp_path, app_config):
        assert run.main(['--config', str(tmp_path / 'missing.json'), '--once']) == 1

    def test_once_success(self, config_file, app_config, local_storage, fake_pg_dump):
        assert run.main(['--config', config_file(), '--once']) == 0

        keys = local_storage.list_artifacts('nightly')
        assert len(keys) == 1
        assert keys[0].startswith('nightly/db1/')

    def test_once_preflight_failure(self, config_file, app_config, local_storage, fake_pg_dump):
        fake_pg_dump.failing.add('db1')

        assert run.main(['--config', config_file(), '--once']) == 1
        assert local_storage.list_artifacts('nightly') == []

    def test_import(self, config_file, app_config):
        data = {
            'import': {
                'target_database': {
                    'host': 'localhost',
                    'username': 'restore',
                    'password': 'pw',
                    'database': 'restored'
                },
                'backup_path': '/backups/db1.sql'
            }
        }

        with patch('run.run_import') as mock_import:
            assert run.main(['--config', config_file(data), '--import']) == 0

        settings = mock_import.call_args.args[0]
        assert settings.target_database.database == 'restored'
        assert mock_import.call_args.kwargs['psql_path'] == 'psql'

    def test_import_missing_dump(self, config_file, app_config, tmp_path):
        data = {
            'import': {
                'target_database': {
                    'host': 'localhost',
                    'username': 'restore',
                    'password': 'pw',
                    'database': 'restored'
                },
                'backup_path': str(tmp_path / 'missing.sql')
            }
        }

        assert run.main(['--config', config_file(data), '--import']) == 1

    @patch('run.stop_scheduler')
    @patch('run.start_scheduler')
    @patch('run.init_scheduler')
    def test_scheduled_mode(self, mock_init, mock_start, mock_stop, config_file, app_config, fake_pg_dump):
        stop_event = MagicMock()

        with patch('run.threading.Event', return_value=stop_event), \
                patch('run.signal.signal') as mock_signal:
            assert run.main(['--config', config_file()]) == 0

        # Startup pre-flight dumped db1 once
        assert fake_pg_dump.calls == ['db1']
        mock_init.assert_called_once()
        assert mock_init.call_args.kwargs['timezone'] == 'UTC'
        mock_start.assert_called_once()
        stop_event.wait.assert_called_once()
        mock_stop.assert_called_once()

        handled = {c.args[0] for c in mock_signal.call_args_list}
        assert handled == {signal.SIGINT, signal.SIGTERM}

    @patch('run.init_scheduler')
    def test_scheduled_mode_preflight_failure(self, mock_init, config_file, app_config, fake_pg_dump):
        fake_pg_dump.failing.add('db1')

        assert run.main(['--config', config_file()]) == 1
        mock_init.assert_not_called()

    @patch('run.start_scheduler')
    def test_scheduled_mode_invalid_schedule(self, mock_start, config_file, app_config, backup_root, fake_pg_dump):
        data = {
            'databases': [
                {'host': 'localhost', 'username': 'backup', 'password': 'secret', 'database': 'db1'}
            ],
            'local': {'path': str(backup_root)},
            'backup': {'retention_days': 7, 'schedule': 'every night at two', 'backup_prefix': 'nightly'}
        }

        with patch('run.signal.signal'), patch('pgbackuper.scheduler.scheduler', None):
            assert run.main(['--config', config_file(data)]) == 1

        mock_start.assert_not_called()
