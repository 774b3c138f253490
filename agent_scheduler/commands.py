"""
Builds the command line the native scheduler runs for a job.
"""

import logging
import shlex
from pathlib import Path
from typing import Dict

from agent_scheduler.config import INPUT_AGENT_TYPES
from agent_scheduler.errors import InvalidJob
from agent_scheduler.jobs import Job

logger = logging.getLogger(__name__)


def resolve_log_path(log_dir: Path, name: str) -> Path:
    """Absolute path of the run log for a job."""
    return (Path(log_dir).expanduser() / f"{name}.log").resolve()


def _runner_invocation(runner: str) -> str:
    # Relative runners are resolved against the pinned project root
    if Path(runner).is_absolute() or runner.startswith(('./', '../')):
        return shlex.quote(runner)
    return shlex.quote(f"./{runner}")


def build_command(job: Job, project_root: Path, runners: Dict[str, str]) -> str:
    """
    Assemble the shell command for a job.

    The working directory is pinned with `cd`, the provider is always
    passed explicitly, and the log file is always passed with --log.

    Example:
        cd /opt/aipm && ./scripts/run-agent.sh wf-123 --provider lmstudio --log /home/me/aipm-scheduled-agents/daily-standup.log
    """
    runner = runners.get(job.agent_type)
    if not runner:
        raise InvalidJob(
            f"Unknown agent type: {job.agent_type}. Use one of: {', '.join(sorted(runners))}"
        )

    argv = [
        _runner_invocation(runner),
        shlex.quote(job.target_id),
        '--provider', shlex.quote(job.provider),
    ]
    if job.background:
        argv.append('--background')
    if job.input_text:
        if job.agent_type in INPUT_AGENT_TYPES:
            argv.extend(['--input', shlex.quote(job.input_text)])
        else:
            logger.warning(
                f"--input is only supported for {', '.join(INPUT_AGENT_TYPES)} agents, ignoring it"
            )
    argv.extend(['--log', shlex.quote(job.log_path)])

    return f"cd {shlex.quote(str(project_root))} && {' '.join(argv)}"
