"""
Crontab backend.

Each job is a two-line block in the user's crontab:

    # AIPM Agent: Daily Standup
    0 9 * * * cd /opt/aipm && ./scripts/run-agent.sh wf-123 --provider lmstudio --log ...

The comment line is the job's only durable identity. Every mutation reads
the whole crontab once, computes the new text, backs up the old text and
installs the new text in a single `crontab -` call. There is no lock: two
concurrent add/remove runs race and the last writer wins. The tool is meant
for a single interactive operator.
"""

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List

from agent_scheduler.backends import SchedulerBackend, SchedulerEntry, ServiceStatus
from agent_scheduler.errors import (
    DuplicateJob,
    InvalidJob,
    JobNotFound,
    MalformedScheduleFile,
    SchedulerUnavailable,
)
from agent_scheduler.identity import marker_comment, parse_marker, slugify
from agent_scheduler.jobs import Job, atomic_write_text

logger = logging.getLogger(__name__)

INSTALL_HINT = "Install cron (e.g. 'sudo apt install cron') and make sure 'crontab' is on PATH"


@dataclass
class _Block:
    """A marker comment and the job line that follows it."""
    index: int  # line index of the marker comment
    description: str
    recurrence: str
    command: str

    @property
    def name(self) -> str:
        return slugify(self.description)


def _escape_percent(command: str) -> str:
    # cron turns unescaped % into newlines
    return command.replace('%', r'\%')


def _unescape_percent(command: str) -> str:
    return command.replace(r'\%', '%')


class CrontabBackend(SchedulerBackend):
    """
    Manages jobs in a crontab.

    With crontab_path set, a plain file in crontab format is managed instead
    of the user's crontab and is replaced atomically with a rename.
    """

    name = 'crontab'

    def __init__(
        self,
        marker_prefix: str,
        backup_file: Path,
        crontab_path: Optional[Path] = None,
        crontab_cmd: str = 'crontab'
    ):
        self.marker_prefix = marker_prefix
        self.backup_file = Path(backup_file)
        self.crontab_path = Path(crontab_path) if crontab_path else None
        self.crontab_cmd = crontab_cmd

    def read(self) -> str:
        """Return the full current crontab text ('' if there is none)."""
        if self.crontab_path is not None:
            if not self.crontab_path.exists():
                return ''
            return self.crontab_path.read_text(encoding='utf-8')

        try:
            result = subprocess.run(
                [self.crontab_cmd, '-l'],
                capture_output=True,
                text=True
            )
        except OSError as e:
            raise SchedulerUnavailable(f"Cannot run '{self.crontab_cmd} -l': {e}", INSTALL_HINT) from e

        if result.returncode == 0:
            return result.stdout
        # "no crontab for <user>" is an empty schedule, not an error
        if 'no crontab' in result.stderr.lower():
            return ''
        raise SchedulerUnavailable(
            f"'{self.crontab_cmd} -l' failed: {result.stderr.strip()}", INSTALL_HINT
        )

    def _install(self, text: str):
        """Replace the whole crontab with text in one operation."""
        if self.crontab_path is not None:
            atomic_write_text(self.crontab_path, text)
            logger.info(f"Replaced crontab file {self.crontab_path}")
            return

        try:
            result = subprocess.run(
                [self.crontab_cmd, '-'],
                input=text,
                capture_output=True,
                text=True
            )
        except OSError as e:
            raise SchedulerUnavailable(f"Cannot run '{self.crontab_cmd} -': {e}", INSTALL_HINT) from e

        if result.returncode != 0:
            raise SchedulerUnavailable(
                f"crontab rejected the new schedule: {result.stderr.strip()}", INSTALL_HINT
            )
        logger.info("Installed updated user crontab")

    @staticmethod
    def _check_block(lines: List[str], index: int, description: str) -> Optional[MalformedScheduleFile]:
        """Return the problem with the block whose marker is at lines[index], if any."""
        if not description.strip():
            return MalformedScheduleFile(index + 1, "marker comment has no description")
        if index + 1 >= len(lines):
            return MalformedScheduleFile(
                index + 1, f"marker for '{description}' is not followed by a job line"
            )

        job_line = lines[index + 1].strip()
        if not job_line or job_line.startswith('#'):
            return MalformedScheduleFile(
                index + 2, f"expected the cron line for '{description}', found {job_line!r}"
            )
        if len(job_line.split(None, 5)) < 6:
            return MalformedScheduleFile(
                index + 2, f"cron line for '{description}' needs five schedule fields and a command"
            )
        return None

    def _backup(self, text: str):
        atomic_write_text(self.backup_file, text)
        logger.debug(f"Backed up crontab to {self.backup_file}")

    def _parse(self, text: str, strict: bool = True) -> List[_Block]:
        """
        Find all marker/job line pairs.

        With strict=False, broken blocks are logged and skipped so the
        readable ones can still be listed.

        Raises:
            MalformedScheduleFile: If strict and a marker is not followed by a cron job line
        """
        lines = text.splitlines()
        blocks = []

        for index, line in enumerate(lines):
            description = parse_marker(self.marker_prefix, line)
            if description is None:
                continue

            problem = self._check_block(lines, index, description)
            if problem:
                if strict:
                    raise problem
                logger.warning(f"Skipping unreadable crontab entry: {problem}")
                continue

            fields = lines[index + 1].strip().split(None, 5)
            blocks.append(_Block(
                index=index,
                description=description,
                recurrence=' '.join(fields[:5]),
                command=_unescape_percent(fields[5]),
            ))

        return blocks

    def _find_duplicate(self, blocks: List[_Block], name: str, description: str) -> Optional[_Block]:
        for block in blocks:
            if block.description == description or block.name == name:
                return block
        return None

    def exists(self, name: str, description: str) -> bool:
        return self._find_duplicate(self._parse(self.read()), name, description) is not None

    def add(self, job: Job):
        current = self.read()
        blocks = self._parse(current)

        if self._find_duplicate(blocks, job.name, job.description):
            raise DuplicateJob(job.name, job.description)

        new_text = current
        if new_text and not new_text.endswith('\n'):
            new_text += '\n'
        new_text += marker_comment(self.marker_prefix, job.description) + '\n'
        new_text += f"{job.recurrence} {_escape_percent(job.command)}\n"

        # One job is exactly one marker line plus one cron line
        added = len(new_text.splitlines()) - len(current.splitlines())
        if added != 2:
            raise InvalidJob(
                f"Refusing to install '{job.description}': it would add {added} crontab lines "
                f"instead of 2 (line break in the description or command?)"
            )

        self._backup(current)
        self._install(new_text)
        logger.info(f"Added crontab entry for '{job.description}' ({job.recurrence})")

    def remove(self, name: str, description: Optional[str] = None) -> SchedulerEntry:
        current = self.read()
        blocks = self._parse(current)

        if description is not None:
            matches = [b for b in blocks if b.description == description]
        else:
            matches = []
        if not matches:
            matches = [b for b in blocks if b.name == name]
        if not matches:
            raise JobNotFound(name)
        if len(matches) > 1:
            logger.warning(
                f"Found {len(matches)} crontab entries for job '{name}', removing all of them"
            )

        # Drop each marker line and the job line right after it
        dropped = set()
        for block in matches:
            dropped.update((block.index, block.index + 1))
        lines = current.splitlines(keepends=True)
        new_text = ''.join(line for i, line in enumerate(lines) if i not in dropped)

        self._backup(current)
        self._install(new_text)

        block = matches[0]
        logger.info(f"Removed crontab entry for '{block.description}'")
        return SchedulerEntry(
            name=block.name,
            description=block.description,
            recurrence=block.recurrence,
            command=block.command,
        )

    def list(self) -> List[SchedulerEntry]:
        return [
            SchedulerEntry(
                name=block.name,
                description=block.description,
                recurrence=block.recurrence,
                command=block.command,
            )
            for block in self._parse(self.read(), strict=False)
        ]

    def recent_log(self, lines: int = 20) -> List[str]:
        if sys.platform == 'darwin':
            commands = [[
                'log', 'show', '--predicate', 'subsystem == "com.vix.cron"',
                '--info', '--last', '1h'
            ]]
        else:
            commands = [
                ['tail', f'-{lines}', '/var/log/cron'],
                ['journalctl', '-u', 'cron', '-n', str(lines), '--no-pager'],
            ]

        for command in commands:
            try:
                result = subprocess.run(command, capture_output=True, text=True)
            except OSError as e:
                logger.debug(f"Cannot run {command[0]}: {e}")
                continue
            if result.returncode == 0 and result.stdout.strip():
                return result.stdout.splitlines()[-lines:]
        return []

    def service_status(self) -> ServiceStatus:
        if self.crontab_path is None and shutil.which(self.crontab_cmd) is None:
            return ServiceStatus(False, f"'{self.crontab_cmd}' command not found", INSTALL_HINT)

        if sys.platform == 'darwin':
            try:
                result = subprocess.run(['launchctl', 'list'], capture_output=True, text=True)
            except OSError as e:
                return ServiceStatus(False, f"Cannot query launchd: {e}")
            if 'com.vix.cron' in result.stdout:
                return ServiceStatus(True, "Cron service is running (managed by launchd)")
            return ServiceStatus(
                False,
                "Cron service may not be running",
                "On macOS, cron is managed by launchd and should start automatically"
            )

        for unit in ('cron', 'crond'):
            try:
                result = subprocess.run(
                    ['systemctl', 'is-active', '--quiet', unit],
                    capture_output=True
                )
            except OSError:
                return ServiceStatus(
                    False,
                    "Cannot determine cron service state (systemctl not available)",
                    "Check that the cron daemon is running, e.g. 'pgrep cron'"
                )
            if result.returncode == 0:
                return ServiceStatus(True, f"{unit} service is active")

        return ServiceStatus(False, "Cron service is not running", "Start with: sudo systemctl start cron")
