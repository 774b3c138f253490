"""
Command-line interface for scheduling agents.

Provides commands for:
- Adding an n8n workflow or LangFlow flow on a human-readable schedule
- Listing and removing scheduled agents
- Showing scheduler service status
- Running the job-store daemon (jobstore backend only)
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, List

from dotenv import load_dotenv

from agent_scheduler.config import SchedulerConfig, PROVIDERS, BACKENDS
from agent_scheduler.errors import AgentSchedulerError
from agent_scheduler.service import SchedulerService, JobListing

logger = logging.getLogger(__name__)

GREEN = '\033[92m'
YELLOW = '\033[93m'
RED = '\033[91m'
BOLD = '\033[1m'
RESET = '\033[0m'

SCHEDULE_EXAMPLES = """\
Schedule examples:
  "daily at 9am"              Every day at 9:00 AM
  "every monday at 10am"      Every Monday at 10:00 AM
  "every 15 minutes"          Every 15 minutes
  "hourly"                    Every hour at minute 0
  "daily"                     Every day at midnight
  "weekly"                    Every Sunday at midnight
  "0 9 * * 1-5"               Weekdays at 9 AM (raw cron)

Examples:
  agent-scheduler add n8n abc123 "daily at 9am" "Daily Standup" --background
  agent-scheduler add langflow xyz789 "every monday at 10am" "Competitive Analysis" \\
      --input "Weekly market update"
  agent-scheduler list
  agent-scheduler remove daily-standup
  agent-scheduler status
"""


def setup_logging(log_file: str = None, verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Console handler (stderr)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def _load_service(args) -> SchedulerService:
    """Build the service from --config/--backend, refusing invalid configuration."""
    try:
        config = SchedulerConfig(args.config, backend=args.backend)
    except (OSError, ValueError) as e:
        raise AgentSchedulerError(f"Cannot load configuration: {e}") from e
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"  - {error}")
        raise AgentSchedulerError(f"Invalid configuration in {config.config_path}")
    return SchedulerService(config)


def _print_header(title: str):
    print("\n┌─────────────────────────────────────────────────────────────────┐")
    print(f"│{title:^65}│")
    print("└─────────────────────────────────────────────────────────────────┘\n")


def _print_listing(listing: JobListing):
    if listing.consistent:
        print(f"  {GREEN}📅 {listing.description}{RESET}  ({listing.name})")
    else:
        print(f"  {YELLOW}⚠ {listing.description}{RESET}  ({listing.name})")

    if listing.schedule:
        print(f"    Schedule: {listing.schedule} ({listing.recurrence})")
    else:
        print(f"    Schedule: {listing.recurrence}")
    print(f"    Command:  {listing.command}")
    if listing.agent_type:
        print(f"    Agent:    {listing.agent_type} {listing.target_id} (provider: {listing.provider})")
    if listing.log_path:
        print(f"    Log:      {listing.log_path}")
    if listing.next_run:
        print(f"    Next Run: {listing.next_run}")
    if listing.last_run:
        last = listing.last_run
        print(f"    Last Run: {last.get('start_time', 'N/A')[:19]} ({last.get('status', 'unknown')})")

    if listing.state == 'missing-metadata':
        print(f"    {YELLOW}Inconsistent: scheduled, but no metadata record exists{RESET}")
    elif listing.state == 'missing-schedule':
        print(f"    {YELLOW}Inconsistent: metadata record exists, but nothing is scheduled{RESET}")
    print()


def _print_jobs(listings: List[JobListing]):
    if not listings:
        print(f"  {YELLOW}No agents are currently scheduled.{RESET}")
        print('  Add one with: agent-scheduler add <type> <id> "<schedule>" "<description>"')
        print()
        return
    for listing in listings:
        _print_listing(listing)


def cmd_add(args):
    """Add a scheduled agent."""
    service = _load_service(args)
    job = service.add(
        agent_type=args.type,
        target_id=args.target_id,
        schedule=args.schedule,
        description=args.description,
        provider=args.provider,
        input_text=args.input,
        background=args.background,
        log_dir=args.log_dir,
    )

    print(f"{GREEN}✓ Scheduled agent: {job.description}{RESET}")
    print(f"  Job name: {job.name}")
    print(f"  Schedule: {job.schedule} ({job.recurrence})")
    print(f"  Command:  {job.command}")
    print(f"  Log file: {job.log_path}")
    print()
    print("  View scheduled jobs: agent-scheduler list")
    print(f"  Remove this job:     agent-scheduler remove {job.name}")


def cmd_list(args):
    """List scheduled agents."""
    service = _load_service(args)
    listings = service.list_jobs()

    if args.json:
        print(json.dumps([listing.to_dict() for listing in listings], indent=2))
        return

    _print_header("SCHEDULED AGENTS")
    print(f"  Backend:    {service.backend.name}")
    print(f"  Metadata:   {service.store.jobs_dir}")
    print(f"  Total Jobs: {len(listings)}\n")
    _print_jobs(listings)


def cmd_remove(args):
    """Remove a scheduled agent."""
    service = _load_service(args)
    entry = service.remove(args.name)
    print(f"{GREEN}✓ Removed scheduled agent: {entry.description}{RESET}")


def cmd_status(args):
    """Show scheduler service status and scheduled agents."""
    service = _load_service(args)
    report = service.status()

    _print_header("SCHEDULER STATUS")
    print(f"  Backend:    {report.backend}")
    if report.service.running:
        print(f"  Status:     {GREEN}● Running{RESET}  {report.service.detail}")
    else:
        print(f"  Status:     {RED}○ Not Running{RESET}  {report.service.detail}")
        if report.service.remediation:
            print(f"\n  {report.service.remediation}")

    print(f"\n  Scheduled Agents: {len(report.jobs)}\n")
    _print_jobs(report.jobs)

    print(f"  {BOLD}Recent scheduler log:{RESET}")
    if report.recent_log:
        for line in report.recent_log:
            print(f"    {line}")
    else:
        print("    (no log entries available)")
    print()


def cmd_daemon(args):
    """Run the job-store daemon in the foreground."""
    from agent_scheduler.backends.jobstore import JobStoreBackend, JobStoreDaemon

    service = _load_service(args)
    if not isinstance(service.backend, JobStoreBackend):
        raise AgentSchedulerError(
            f"The daemon is only used by the jobstore backend; "
            f"'{service.backend.name}' jobs are run by the system scheduler"
        )

    logger.info("Running in foreground mode. Press Ctrl+C to stop.")
    JobStoreDaemon(service.backend, max_workers=args.workers).run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='agent-scheduler',
        description="AIPM Agent Scheduler - run n8n workflows and LangFlow flows on a schedule",
        epilog=SCHEDULE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to scheduler configuration file'
    )
    parser.add_argument(
        '--backend',
        choices=BACKENDS,
        help='Native scheduler backend (default: crontab, or jobstore on Windows)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Also write log messages to this file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Add command
    add_parser = subparsers.add_parser(
        'add',
        help='Schedule an agent',
        epilog=SCHEDULE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    add_parser.add_argument('type', help='Agent type: n8n or langflow')
    add_parser.add_argument('target_id', help='Workflow or flow id')
    add_parser.add_argument('schedule', help='Schedule, e.g. "daily at 9am"')
    add_parser.add_argument('description', help='Description; also identifies the job')
    add_parser.add_argument('--provider', choices=PROVIDERS,
                            help='LLM provider passed to the agent (default: from config)')
    add_parser.add_argument('--input', type=str, help='Custom input for LangFlow flows')
    add_parser.add_argument('--background', action='store_true',
                            help='Run the agent in background mode')
    add_parser.add_argument('--log-dir', type=str, help='Directory for the job log file')
    add_parser.set_defaults(func=cmd_add)

    # List command
    list_parser = subparsers.add_parser('list', help='List scheduled agents')
    list_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    list_parser.set_defaults(func=cmd_list)

    # Remove command
    remove_parser = subparsers.add_parser('remove', help='Remove a scheduled agent')
    remove_parser.add_argument('name', help='Job name or description')
    remove_parser.set_defaults(func=cmd_remove)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show scheduler service status')
    status_parser.set_defaults(func=cmd_status)

    # Daemon command
    daemon_parser = subparsers.add_parser('daemon', help='Run job-store tasks (jobstore backend)')
    daemon_parser.add_argument('--workers', type=int, default=5,
                               help='Maximum concurrent tasks (default: 5)')
    daemon_parser.set_defaults(func=cmd_daemon)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(log_file=args.log_file, verbose=args.verbose)

    try:
        args.func(args)
    except AgentSchedulerError as e:
        logger.error(str(e))
        return 1
    except OSError as e:
        logger.error(f"'{args.command}' failed: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
