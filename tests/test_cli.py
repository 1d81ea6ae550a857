"""Tests for the postmark command-line interface."""

import pytest
import os
import logging
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from postmark_pkg import __version__
from postmark_pkg.cli import InfoFilter, build_parser, main, setup_logging
from postmark_pkg.store import DataStore


@pytest.fixture
def workdir(temp_dir, monkeypatch):
    """Run each CLI test from an empty working directory."""
    monkeypatch.chdir(temp_dir)
    return temp_dir


def make_record(message, level=logging.INFO):
    return logging.LogRecord('Postmark', level, __file__, 1, message, None, None)


class TestParser:
    """Test argument parsing."""

    def test_regenerate_arguments(self):
        args = build_parser().parse_args(['regenerate', 'content', '--db', 'x.db', '--dry-run', '--db-only', '-f'])

        assert args.command == 'regenerate'
        assert args.content == 'content'
        assert args.database == 'x.db'
        assert args.dry_run is True
        assert args.db_only is True
        assert args.fragments is True

    def test_unset_flags_are_none(self):
        """Flags left off the command line do not override configuration."""
        args = build_parser().parse_args(['watch'])

        assert args.content is None
        assert args.fragments is None
        assert args.rescan_on_start is None
        assert args.poll_interval is None

    def test_watch_arguments(self):
        args = build_parser().parse_args(['watch', '--interval', '0.5', '--no-rescan'])

        assert args.poll_interval == 0.5
        assert args.rescan_on_start is False

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(['--version'])

        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestLogging:
    """Test console filtering and log files."""

    def test_info_filter(self):
        info_filter = InfoFilter()

        assert info_filter.filter(make_record('Tasks failed: 0'))
        assert info_filter.filter(make_record('Dry run: would clear all 2 stored posts.'))
        assert not info_filter.filter(make_record('Upserting post with slug: hello'))
        assert info_filter.filter(make_record('Anything at all', logging.WARNING))

    def test_log_file_created(self, temp_dir):
        log_dir = os.path.join(temp_dir, 'logs')

        logger = setup_logging(log_dir)
        logger.debug("debug line")

        log_files = os.listdir(log_dir)
        assert len(log_files) == 1
        assert log_files[0].startswith('postmark_')

    def test_handlers_added_once(self, temp_dir):
        setup_logging(None)
        logger = setup_logging(None)

        assert len(logger.handlers) == 1


class TestMain:
    """Test the commands end to end."""

    def test_no_command_prints_help(self, workdir, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])

        assert exc.value.code == 1
        assert 'usage: postmark' in capsys.readouterr().out

    def test_init_creates_config(self, workdir, capsys):
        main(['--init', 'yml'])

        assert Path(workdir, 'postmark.yml').exists()
        assert 'Created sample configuration file' in capsys.readouterr().out

    def test_regenerate(self, workdir, content_dir, make_post, db_path):
        post_dir = make_post('hello', body='# Hello\n\nBody.\n')

        main(['regenerate', content_dir, '--db', db_path])

        with DataStore(db_path) as store:
            assert store.get_post('hello').title == 'Hello'
        # Full documents unless fragments are requested
        assert '<!DOCTYPE html>' in Path(post_dir, 'index.html').read_text()
        assert os.path.isdir(os.path.join(workdir, 'logs'))

    def test_regenerate_fragments(self, workdir, content_dir, make_post, db_path):
        post_dir = make_post('hello', body='# Hello\n\nBody.\n')

        main(['regenerate', content_dir, '--db', db_path, '--fragments'])

        assert '<!DOCTYPE html>' not in Path(post_dir, 'index.html').read_text()

    def test_regenerate_from_config_file(self, workdir, content_dir, make_post, db_path):
        make_post('hello')
        Path(workdir, 'postmark.yml').write_text(f"content: {content_dir}\ndatabase: {db_path}\n")

        main(['regenerate'])

        with DataStore(db_path) as store:
            assert store.count_posts() == 1

    def test_dry_run_without_database(self, workdir, content_dir, make_post, db_path):
        post_dir = make_post('hello')

        main(['regenerate', content_dir, '--db', db_path, '--dry-run'])

        assert not os.path.exists(db_path)
        assert not Path(post_dir, 'index.html').exists()

    def test_dry_run_leaves_existing_database_untouched(self, workdir, content_dir, make_post, db_path):
        make_post('hello')
        make_post('second')
        main(['regenerate', content_dir, '--db', db_path, '--db-only'])
        with open(db_path, 'rb') as f:
            before = f.read()

        with patch('postmark_pkg.cli.DataStore', wraps=DataStore) as store_class:
            main(['regenerate', content_dir, '--db', db_path, '--dry-run'])

        store_class.assert_called_once_with(db_path, read_only=True)
        with open(db_path, 'rb') as f:
            assert f.read() == before

    def test_database_only(self, workdir, content_dir, make_post, db_path):
        post_dir = make_post('hello')

        main(['regenerate', content_dir, '--db', db_path, '--db-only'])

        assert not Path(post_dir, 'index.html').exists()
        with DataStore(db_path) as store:
            assert store.count_posts() == 1

    def test_missing_content_directory(self, workdir, capsys):
        with pytest.raises(SystemExit) as exc:
            main(['regenerate', os.path.join(workdir, 'missing')])

        assert exc.value.code == 1
        assert 'Error: Content directory not found' in capsys.readouterr().err

    def test_unopenable_database(self, workdir, content_dir, capsys):
        with pytest.raises(SystemExit) as exc:
            main(['regenerate', content_dir, '--db', os.path.join(workdir, 'no', 'such', 'store.sqlite')])

        assert exc.value.code == 1
        assert 'Error: Could not open database' in capsys.readouterr().err

    def test_watch_regenerates_then_stops(self, workdir, content_dir, make_post, db_path, capsys):
        """Watching rescans first and exits cleanly on interrupt."""
        make_post('hello')

        with patch('postmark_pkg.cli.ReconciliationPipeline.drain', side_effect=KeyboardInterrupt):
            main(['watch', content_dir, '--db', db_path, '--interval', '0.05'])

        with DataStore(db_path) as store:
            assert store.count_posts() == 1
        err = capsys.readouterr().err
        assert 'Watching for changes in' in err
        assert 'Stopped watching.' in err

    def test_watch_without_rescan(self, workdir, content_dir, make_post, db_path):
        make_post('hello')

        with patch('postmark_pkg.cli.ReconciliationPipeline.drain', side_effect=KeyboardInterrupt):
            main(['watch', content_dir, '--db', db_path, '--no-rescan'])

        with DataStore(db_path) as store:
            assert store.count_posts() == 0
