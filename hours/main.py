"""Hours sync entry point.

Sync commands write Bitbucket data into the local store; activity and status
commands read it back; worker runs queued refresh jobs.
Usage: hours [--config FILE] <command> [options].
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from hours.config import load_config
from hours.errors import HoursError
from hours.logging import HoursLogging

LOG = logging.getLogger("hours.main")


def _add_days(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--days", type=int, default=14, help="Day window (default 14)")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse global options and the subcommand."""
    parser = argparse.ArgumentParser(
        prog="hours",
        description="Hours sync - Bitbucket commit and pull request activity",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only load and validate config, then exit",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("sync-repositories", help="Sync workspace repositories")

    p = sub.add_parser("sync-commits", help="Sync main-branch (and author) commits")
    _add_days(p)
    p.add_argument("--repository", help="Only this repository (workspace/name)")
    p.add_argument("--author", help="Also fetch this author's commits on all branches")

    p = sub.add_parser("sync-pull-requests", help="Sync pull requests")
    _add_days(p)
    p.add_argument("--repository", help="Only this repository (workspace/name)")

    p = sub.add_parser("sync-all", help="Sync repositories, pull requests and commits")
    _add_days(p)
    p.add_argument("--author", help="Also fetch this author's commits on all branches")

    for name, help_text in (("refresh", "Run a full refresh"), ("activity", "Print merged activity")):
        p = sub.add_parser(name, help=help_text)
        _add_days(p)
        p.add_argument("--repository", action="append", dest="repositories", help="Repository (repeatable)")
        p.add_argument("--author", help="Author filter")
        if name == "refresh":
            p.add_argument("--background", action="store_true", help="Queue a job instead of running inline")
        else:
            p.add_argument("--force-refresh", action="store_true", help="Ignore cached responses")

    p = sub.add_parser("status", help="Show refresh job status")
    p.add_argument("job_id", nargs="?", help="Job id (default: latest job)")

    p = sub.add_parser("cancel", help="Cancel a refresh job")
    p.add_argument("job_id", help="Job id")

    p = sub.add_parser("worker", help="Run queued refresh jobs")
    p.add_argument("--once", action="store_true", help="Process at most one job then exit")
    p.add_argument("--poll-interval", type=int, default=None, help="Seconds to wait when queue is empty")

    p = sub.add_parser("debug", help="Refresh one repository and print its activity")
    p.add_argument("repository", help="Repository (workspace/name)")
    _add_days(p)

    sub.add_parser("repositories", help="List locally tracked repositories")
    sub.add_parser("test-auth", help="Check Bitbucket credentials")
    sub.add_parser("clear-cache", help="Drop cached responses and branch lists")

    return parser.parse_args(argv)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def run_command(args: argparse.Namespace, service: Any) -> int:
    """Dispatch a parsed command to the service; returns exit code."""
    cmd = args.command
    if cmd == "sync-repositories":
        _print(service.sync_repositories())
    elif cmd == "sync-commits":
        _print(service.sync_commits(args.days, args.repository, args.author))
    elif cmd == "sync-pull-requests":
        _print(service.sync_pull_requests(args.days, args.repository))
    elif cmd == "sync-all":
        _print(service.sync_all(args.days, args.author))
    elif cmd == "refresh":
        if args.background:
            _print(service.start_refresh_job(args.days, args.repositories, args.author))
        else:
            _print(
                service.orchestrator.refresh(
                    args.days,
                    args.repositories,
                    args.author,
                    progress=print,
                    time_budget=service.config.sync.job_time_budget,
                )
            )
    elif cmd == "activity":
        _print(
            service.get_activity(
                args.days,
                args.repositories,
                args.author,
                force_refresh=args.force_refresh,
            )
        )
    elif cmd == "status":
        _print(service.get_job_status(args.job_id))
    elif cmd == "cancel":
        _print(service.cancel_job(args.job_id))
    elif cmd == "debug":
        _print(service.debug_repository(args.repository, args.days))
    elif cmd == "repositories":
        _print(service.list_local_repositories())
    elif cmd == "test-auth":
        result = service.test_authentication()
        _print(result)
        return 0 if result["success"] else 1
    elif cmd == "clear-cache":
        _print({"removed": service.clear_cache()})
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point: load config, then dispatch the subcommand."""
    args = parse_args(argv)

    config_path = args.config
    if not config_path.is_file() and config_path == Path("config.yaml"):
        if Path("config.example.yaml").is_file():
            config_path = Path("config.example.yaml")
            logging.basicConfig(level=logging.INFO)
            LOG.warning("config.yaml not found, using config.example.yaml")

    config = load_config(config_path)

    if args.check:
        print("Config OK:", config.bitbucket.api_url, ",".join(config.bitbucket.workspace_list) or "-")
        return 0
    if not args.command:
        print("No command given; see hours --help", file=sys.stderr)
        return 2

    HoursLogging(config.logging).setup()

    from hours.service import ActivityService

    try:
        if args.command == "worker":
            from hours.worker import run_worker

            run_worker(config, once=args.once, poll_interval=args.poll_interval, setup_logging=False)
            return 0
        service = ActivityService.from_config(config)
        return run_command(args, service)
    except KeyboardInterrupt:
        return 0
    except HoursError as e:
        LOG.error("%s", e)
        return 1
    except Exception as e:
        LOG.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
