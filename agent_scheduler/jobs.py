"""
Job records, their metadata store, and run history.

Every scheduled job has one JSON metadata file under
<data_dir>/jobs/<name>.json. The native scheduler entry decides whether a
job fires; the metadata record only carries the details shown by
list/status.
"""

import json
import logging
import os
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List

from agent_scheduler.errors import CorruptMetadata

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str):
    """Write text to path by replacing it in a single rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix='.tmp', prefix=f'.{path.name}_')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


@dataclass
class Job:
    """
    A scheduled agent.

    Jobs are identified by `name`, which is always slugify(description).
    """
    name: str
    description: str
    agent_type: str  # 'n8n' or 'langflow'
    target_id: str  # workflow / flow id passed to the runner
    schedule: str  # schedule text as the operator typed it
    recurrence: str  # resolved cron expression
    provider: str
    log_path: str
    background: bool = False
    input_text: Optional[str] = None  # custom input for LangFlow flows
    command: Optional[str] = None  # full command line registered with the scheduler
    backend: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec='seconds'))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class JobMetadataStore:
    """
    One JSON file per job, keyed by job name.

    The directory is created on first write.
    """

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = Path(jobs_dir)

    def _path(self, name: str) -> Path:
        return self.jobs_dir / f"{name}.json"

    def put(self, job: Job):
        """Persist a job record, replacing any record with the same name."""
        atomic_write_text(self._path(job.name), json.dumps(job.to_dict(), indent=2) + "\n")
        logger.debug(f"Wrote metadata for job '{job.name}' to {self._path(job.name)}")

    def get(self, name: str) -> Optional[Job]:
        """Return the job record, or None if there is none."""
        path = self._path(name)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return Job.from_dict(json.load(f))
        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            raise CorruptMetadata(path, str(e)) from e

    def delete(self, name: str) -> bool:
        """
        Remove a job record.

        Returns:
            True if a record was removed, False if none existed
        """
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Deleted metadata for job '{name}'")
        return True

    def list(self) -> List[Job]:
        """All job records, sorted by name. Unreadable files are skipped with a warning."""
        if not self.jobs_dir.exists():
            return []

        jobs = []
        for path in sorted(self.jobs_dir.glob('*.json')):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    jobs.append(Job.from_dict(json.load(f)))
            except (OSError, json.JSONDecodeError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping unreadable job metadata {path}: {e}")
        return jobs


class HistoryStore:
    """
    Persists run history of job-store tasks to a JSON file.

    Each run record contains:
    - job_name: Name of the job
    - run_id: Unique run identifier
    - start_time / end_time: ISO timestamps
    - status: 'success', 'failed', or 'running'
    - exit_code: Process exit code (if completed)
    """

    def __init__(self, history_file: Path, max_entries: int = 1000):
        self.history_file = Path(history_file)
        self.max_entries = max_entries

    def _read_history(self) -> List[Dict[str, Any]]:
        try:
            with open(self.history_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return []

    def _write_history(self, history: List[Dict[str, Any]]):
        atomic_write_text(self.history_file, json.dumps(history, indent=2, default=str))

    def add_run(self, record: Dict[str, Any]):
        history = self._read_history()
        history.append(record)

        # Keep the most recent entries
        if len(history) > self.max_entries:
            history = history[-self.max_entries:]

        self._write_history(history)

    def update_run(self, run_id: str, updates: Dict[str, Any]):
        history = self._read_history()
        for record in history:
            if record.get('run_id') == run_id:
                record.update(updates)
                break
        self._write_history(history)

    def recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        """The last `limit` run records of all jobs, oldest first."""
        return self._read_history()[-limit:]

    def last_run(self, job_name: str) -> Optional[Dict[str, Any]]:
        """Most recent run record for a job, or None."""
        runs = [r for r in self._read_history() if r.get('job_name') == job_name]
        if not runs:
            return None
        return max(runs, key=lambda r: r.get('start_time', ''))


def execute_scheduled_command(command: str, job_name: str, history_file: str) -> int:
    """
    Run a scheduled command once and record the run.

    This is a module-level function so APScheduler can serialize a
    reference to it in the persistent job store. Output is not captured
    here: every command carries its own --log redirection.

    Returns:
        The command's exit code
    """
    history = HistoryStore(Path(history_file))
    run_id = str(uuid.uuid4())[:8]
    log_prefix = f"[{job_name}:{run_id}]"
    start_time = datetime.now()

    history.add_run({
        'job_name': job_name,
        'run_id': run_id,
        'command': command,
        'start_time': start_time.isoformat(),
        'end_time': None,
        'status': 'running',
        'exit_code': None,
    })
    logger.info(f"{log_prefix} Executing command: {command}")

    try:
        result = subprocess.run(command, shell=True)
    except OSError as e:
        logger.error(f"{log_prefix} Command could not be started: {e}")
        history.update_run(run_id, {
            'end_time': datetime.now().isoformat(),
            'status': 'failed',
            'error': str(e),
        })
        raise

    end_time = datetime.now()
    status = 'success' if result.returncode == 0 else 'failed'
    history.update_run(run_id, {
        'end_time': end_time.isoformat(),
        'status': status,
        'exit_code': result.returncode,
    })

    duration = (end_time - start_time).total_seconds()
    if status == 'success':
        logger.info(f"{log_prefix} Completed successfully in {duration:.2f}s")
    else:
        logger.error(f"{log_prefix} Failed with exit code {result.returncode} after {duration:.2f}s")
    return result.returncode
