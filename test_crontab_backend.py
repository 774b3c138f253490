#!/usr/bin/env python3
"""
Tests for the crontab backend.

Most tests manage a plain crontab-format file; the user crontab path is
exercised with a stubbed `crontab` command.
"""

import subprocess

import pytest

from agent_scheduler.backends import crontab as crontab_module
from agent_scheduler.backends.crontab import CrontabBackend
from agent_scheduler.errors import (
    DuplicateJob,
    InvalidJob,
    JobNotFound,
    MalformedScheduleFile,
    SchedulerUnavailable,
)
from agent_scheduler.identity import slugify
from agent_scheduler.jobs import Job

UNRELATED = (
    "MAILTO=ops@example.com\n"
    "# nightly backup\n"
    "30 2 * * * /usr/local/bin/backup.sh\n"
)


def _job(description="Daily Standup", recurrence="0 9 * * *", command="cd /opt/aipm && ./scripts/run-agent.sh wf-123"):
    return Job(
        name=slugify(description),
        description=description,
        agent_type="n8n",
        target_id="wf-123",
        schedule="daily at 9am",
        recurrence=recurrence,
        provider="lmstudio",
        log_path="/tmp/daily-standup.log",
        command=command,
    )


@pytest.fixture
def crontab_file(tmp_path):
    return tmp_path / "crontab"


@pytest.fixture
def backend(tmp_path, crontab_file):
    return CrontabBackend(
        marker_prefix="AIPM Agent",
        backup_file=tmp_path / "data" / "crontab.backup",
        crontab_path=crontab_file,
    )


def test_add_to_empty_crontab(backend, crontab_file):
    backend.add(_job())

    assert crontab_file.read_text() == (
        "# AIPM Agent: Daily Standup\n"
        "0 9 * * * cd /opt/aipm && ./scripts/run-agent.sh wf-123\n"
    )
    entries = backend.list()
    assert len(entries) == 1
    assert entries[0].name == "daily-standup"
    assert entries[0].description == "Daily Standup"
    assert entries[0].recurrence == "0 9 * * *"


def test_add_preserves_unrelated_lines(backend, crontab_file):
    crontab_file.write_text(UNRELATED.rstrip("\n"))

    backend.add(_job())

    text = crontab_file.read_text()
    assert text.startswith(UNRELATED)
    assert text.endswith("# AIPM Agent: Daily Standup\n0 9 * * * cd /opt/aipm && ./scripts/run-agent.sh wf-123\n")


def test_add_writes_backup_of_previous_crontab(backend, crontab_file, tmp_path):
    crontab_file.write_text(UNRELATED)
    backend.add(_job())
    assert (tmp_path / "data" / "crontab.backup").read_text() == UNRELATED


def test_duplicate_description_leaves_crontab_unchanged(backend, crontab_file):
    backend.add(_job())
    before = crontab_file.read_bytes()

    with pytest.raises(DuplicateJob):
        backend.add(_job(recurrence="0 10 * * *"))
    # Different text, same name
    with pytest.raises(DuplicateJob):
        backend.add(_job(description="daily  standup!"))

    assert crontab_file.read_bytes() == before
    assert backend.exists("daily-standup", "Daily Standup")
    assert not backend.exists("weekly-report", "Weekly Report")


def test_remove_drops_exactly_the_job_block(backend, crontab_file):
    crontab_file.write_text(UNRELATED)
    backend.add(_job())
    backend.add(_job(description="Weekly Report", recurrence="0 17 * * 5"))

    entry = backend.remove("daily-standup", "Daily Standup")

    assert entry.description == "Daily Standup"
    text = crontab_file.read_text()
    assert text.startswith(UNRELATED)
    assert "Daily Standup" not in text
    assert len(text.splitlines()) == len(UNRELATED.splitlines()) + 2
    assert [e.name for e in backend.list()] == ["weekly-report"]


def test_remove_by_name_only(backend):
    backend.add(_job())
    backend.remove("daily-standup")
    assert backend.list() == []


def test_remove_missing_job_changes_nothing(backend, crontab_file, tmp_path):
    crontab_file.write_text(UNRELATED)
    before = crontab_file.read_bytes()

    with pytest.raises(JobNotFound):
        backend.remove("nonexistent")

    assert crontab_file.read_bytes() == before
    assert not (tmp_path / "data" / "crontab.backup").exists()


def test_remove_all_blocks_with_the_same_name(backend, crontab_file):
    crontab_file.write_text(
        "# AIPM Agent: Daily Standup\n0 9 * * * one\n"
        "# AIPM Agent: daily standup\n0 10 * * * two\n"
    )
    backend.remove("daily-standup")
    assert crontab_file.read_text() == ""


def test_marker_without_job_line_is_refused(backend, crontab_file):
    crontab_file.write_text(
        "# AIPM Agent: Broken\n# just a comment\n"
        "# AIPM Agent: Weekly Report\n0 17 * * 5 ./scripts/run-agent.sh wf-9\n"
    )
    before = crontab_file.read_bytes()

    with pytest.raises(MalformedScheduleFile) as exc_info:
        backend.add(_job())
    assert exc_info.value.line_number == 2
    with pytest.raises(MalformedScheduleFile):
        backend.remove("weekly-report")
    assert crontab_file.read_bytes() == before

    # Listing still shows the readable entries
    assert [e.name for e in backend.list()] == ["weekly-report"]


def test_line_break_in_command_is_refused(backend, crontab_file, tmp_path):
    crontab_file.write_text(UNRELATED)

    for command in ("run wf-1\n* * * * * touch /tmp/x #", "run\rwf-1", "run\u2028wf-1"):
        with pytest.raises(InvalidJob):
            backend.add(_job(command=command))

    assert crontab_file.read_text() == UNRELATED
    assert not (tmp_path / "data" / "crontab.backup").exists()


def test_marker_at_end_of_file_is_refused(backend, crontab_file):
    crontab_file.write_text(UNRELATED + "# AIPM Agent: Dangling\n")
    with pytest.raises(MalformedScheduleFile):
        backend.remove("dangling")


def test_percent_signs_are_escaped(backend, crontab_file):
    backend.add(_job(command="echo $(date +%Y-%m-%d)"))

    assert r"date +\%Y-\%m-\%d" in crontab_file.read_text()
    assert backend.list()[0].command == "echo $(date +%Y-%m-%d)"


class FakeCrontab:
    """Stands in for subprocess.run of the crontab command."""

    def __init__(self, installed=None, list_error=None):
        self.installed = installed
        self.list_error = list_error
        self.calls = []

    def __call__(self, args, input=None, **kwargs):
        self.calls.append(args)
        if args[1] == '-l':
            if self.installed is None:
                return subprocess.CompletedProcess(args, 1, stdout='', stderr=self.list_error or 'no crontab for tester\n')
            return subprocess.CompletedProcess(args, 0, stdout=self.installed, stderr='')
        self.installed = input
        return subprocess.CompletedProcess(args, 0, stdout='', stderr='')


def test_user_crontab_missing_is_empty(tmp_path, monkeypatch):
    fake = FakeCrontab()
    monkeypatch.setattr(crontab_module.subprocess, 'run', fake)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    backend.add(_job())

    assert fake.calls == [['crontab', '-l'], ['crontab', '-']]
    assert fake.installed.startswith("# AIPM Agent: Daily Standup\n")
    assert [e.name for e in backend.list()] == ["daily-standup"]


def test_user_crontab_read_failure(tmp_path, monkeypatch):
    fake = FakeCrontab(list_error='crontab: permission denied\n')
    monkeypatch.setattr(crontab_module.subprocess, 'run', fake)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    with pytest.raises(SchedulerUnavailable):
        backend.list()


def test_crontab_command_not_installed(tmp_path, monkeypatch):
    def missing(*args, **kwargs):
        raise FileNotFoundError("crontab")

    monkeypatch.setattr(crontab_module.subprocess, 'run', missing)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    with pytest.raises(SchedulerUnavailable) as exc_info:
        backend.add(_job())
    assert exc_info.value.remediation == crontab_module.INSTALL_HINT
    assert not (tmp_path / "crontab.backup").exists()


def test_service_status_without_crontab_binary(tmp_path, monkeypatch):
    monkeypatch.setattr(crontab_module.shutil, 'which', lambda cmd: None)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    status = backend.service_status()
    assert not status.running
    assert status.remediation == crontab_module.INSTALL_HINT


def test_service_status_systemd(tmp_path, monkeypatch):
    monkeypatch.setattr(crontab_module.sys, 'platform', 'linux')
    monkeypatch.setattr(crontab_module.shutil, 'which', lambda cmd: '/usr/bin/crontab')

    def systemctl(args, **kwargs):
        return subprocess.CompletedProcess(args, 0 if args[-1] == 'crond' else 3)

    monkeypatch.setattr(crontab_module.subprocess, 'run', systemctl)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    status = backend.service_status()
    assert status.running
    assert 'crond' in status.detail


def test_recent_log_falls_back_to_journal(tmp_path, monkeypatch):
    monkeypatch.setattr(crontab_module.sys, 'platform', 'linux')

    def run(args, **kwargs):
        if args[0] == 'tail':
            return subprocess.CompletedProcess(args, 1, stdout='', stderr='No such file or directory')
        if args[0] == 'journalctl':
            return subprocess.CompletedProcess(args, 0, stdout='cron[1]: (me) CMD (run-agent.sh)\n', stderr='')
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(crontab_module.subprocess, 'run', run)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    assert backend.recent_log() == ['cron[1]: (me) CMD (run-agent.sh)']


def test_recent_log_is_empty_without_log_tools(tmp_path, monkeypatch):
    def missing(args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(crontab_module.subprocess, 'run', missing)
    backend = CrontabBackend("AIPM Agent", tmp_path / "crontab.backup")

    assert backend.recent_log() == []
