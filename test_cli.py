#!/usr/bin/env python3
"""
Tests for the agent-scheduler command line.
"""

import json
import logging

import pytest

from agent_scheduler.cli import main
from agent_scheduler.config import (
    ENV_BACKEND,
    ENV_CONFIG_PATH,
    ENV_DATA_DIR,
    ENV_LOG_DIR,
    ENV_PROJECT_ROOT,
    ENV_PROVIDER,
)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for var in (ENV_CONFIG_PATH, ENV_DATA_DIR, ENV_LOG_DIR, ENV_PROJECT_ROOT, ENV_PROVIDER, ENV_BACKEND):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)

    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "data_dir": str(tmp_path / "data"),
        "log_dir": str(tmp_path / "logs"),
        "project_root": str(tmp_path),
        "default_provider": "lmstudio",
        "backend": "crontab",
        "crontab_path": str(tmp_path / "crontab"),
    }))
    return str(path)


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage: agent-scheduler" in capsys.readouterr().out


def test_add_list_remove(config_file, tmp_path, capsys):
    assert main(['-c', config_file, 'add', 'n8n', 'wf-123', 'daily at 9am', 'Daily Standup', '--background']) == 0
    out = capsys.readouterr().out
    assert "Scheduled agent: Daily Standup" in out
    assert "agent-scheduler remove daily-standup" in out
    assert "# AIPM Agent: Daily Standup" in (tmp_path / "crontab").read_text()

    assert main(['-c', config_file, 'list', '--json']) == 0
    listings = json.loads(capsys.readouterr().out)
    assert len(listings) == 1
    assert listings[0]['name'] == 'daily-standup'
    assert listings[0]['state'] == 'ok'
    assert listings[0]['recurrence'] == '0 9 * * *'
    assert '--background' in listings[0]['command']

    assert main(['-c', config_file, 'list']) == 0
    assert "Daily Standup" in capsys.readouterr().out

    assert main(['-c', config_file, 'remove', 'Daily Standup']) == 0
    assert "Removed scheduled agent: Daily Standup" in capsys.readouterr().out

    assert main(['-c', config_file, 'list', '--json']) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_errors_exit_with_status_1(config_file, capsys):
    assert main(['-c', config_file, 'add', 'n8n', 'wf-1', 'sometime next week', 'Bad Schedule']) == 1
    assert main(['-c', config_file, 'remove', 'nonexistent']) == 1

    assert main(['-c', config_file, 'add', 'n8n', 'wf-1', 'hourly', 'Hourly Sync']) == 0
    assert main(['-c', config_file, 'add', 'n8n', 'wf-1', 'hourly', 'Hourly Sync']) == 1

    err = capsys.readouterr().err
    assert "Unknown schedule format 'sometime next week'" in err
    assert "already scheduled" in err


def test_daemon_requires_jobstore_backend(config_file):
    assert main(['-c', config_file, 'daemon']) == 1


def test_invalid_configuration(config_file, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"default_provider": "openai"}))
    assert main(['-c', str(bad), 'list']) == 1

    broken = tmp_path / "broken.json"
    broken.write_text("{")
    assert main(['-c', str(broken), 'list']) == 1


def test_unknown_provider_is_a_usage_error(config_file):
    with pytest.raises(SystemExit) as exc_info:
        main(['-c', config_file, 'add', 'n8n', 'wf-1', 'hourly', 'Sync', '--provider', 'openai'])
    assert exc_info.value.code == 2


def test_corrupt_metadata_is_reported(config_file, tmp_path, capsys):
    assert main(['-c', config_file, 'add', 'n8n', 'wf-1', 'hourly', 'Hourly Sync']) == 0
    (tmp_path / "data" / "jobs" / "hourly-sync.json").write_text("{not json")

    assert main(['-c', config_file, 'remove', 'hourly-sync']) == 1
    assert "hourly-sync.json" in capsys.readouterr().err
    assert "# AIPM Agent: Hourly Sync" in (tmp_path / "crontab").read_text()


def test_unusable_log_dir_exits_with_status_1(config_file, tmp_path, capsys):
    not_a_dir = tmp_path / "logs.txt"
    not_a_dir.write_text("")

    assert main(['-c', config_file, 'add', 'n8n', 'wf-1', 'hourly', 'Hourly Sync',
                 '--log-dir', str(not_a_dir)]) == 1
    assert "'add' failed" in capsys.readouterr().err
    assert not (tmp_path / "crontab").exists()


def test_status_shows_recent_log_section(config_file, tmp_path, capsys):
    assert main(['-c', config_file, '--backend', 'jobstore', 'status']) == 0
    out = capsys.readouterr().out
    assert "Recent scheduler log:" in out
    assert "(no log entries available)" in out
