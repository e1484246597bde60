"""
Command-line interface for datastash.

Provides commands for:
- Setting up a recipe and its working directory
- Starting/stopping the worker
- Queueing runs and modifying the recipe
- Inspecting runs, their logs and the data they collected
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from datastash.client import DatastashClient
from datastash.config import StashConfig
from datastash.errors import Conflict, NotFound, RecipeInvalid, ScheduleInvalid, SetupFailed, StashError
from datastash.models import MANUAL, QUEUED, RUNNING, SUCCESS, FAILURE, SYSTEM_ERROR
from datastash.pipeline import PipelineRunner, run_setup
from datastash.recipes import install_recipe, load_recipe_file
from datastash.service import SchedulerService, get_service_info, is_service_running
from datastash.store import SQLiteDocumentStore

logger = logging.getLogger(__name__)

STATE_COLORS = {
    SUCCESS: "\033[92m",
    FAILURE: "\033[91m",
    SYSTEM_ERROR: "\033[91m",
    RUNNING: "\033[93m",
}


def setup_logging(log_file: Optional[str] = None, verbose: bool = False,
                  config: Optional[StashConfig] = None):
    """Setup logging configuration."""
    if verbose:
        level = logging.DEBUG
    elif config:
        level = getattr(logging, config.logging.level.upper(), logging.INFO)
    else:
        level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.logging.max_bytes if config else 10 * 1024 * 1024,
            backupCount=config.logging.backup_count if config else 5
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)

    # APScheduler logs every poll at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(args) -> StashConfig:
    config = StashConfig(args.config, data_dir=args.data_dir)
    errors = config.validate()
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)
    return config


def _client(config: StashConfig) -> DatastashClient:
    return DatastashClient(SQLiteDocumentStore(config.database))


def _format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return '-'
    if seconds >= 3600:
        return f"{seconds / 3600:.1f}h"
    if seconds >= 60:
        return f"{seconds / 60:.1f}m"
    return f"{seconds:.1f}s"


def _colored(state: str, enabled: bool) -> str:
    if enabled and state in STATE_COLORS:
        return f"{STATE_COLORS[state]}{state}\033[0m"
    return state


def cmd_init(args):
    """Initialize datastash configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = StashConfig(args.config, data_dir=args.data_dir)
        config.save()
        config.source_location.mkdir(parents=True, exist_ok=True)
        Path(config.logging.file).parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized configuration at: {config.config_path}")
        logger.info(f"Data directory: {config.data_dir}")
    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = StashConfig(args.config, data_dir=args.data_dir)

        print(f"\nConfiguration file: {config.config_path}")
        print(f"Data directory:     {config.data_dir}")
        print(f"Working directory:  {config.source_location}")
        print(f"Database:           {config.database}")
        print(f"Stored runs:        {config.stored_runs}")
        print(f"Poll interval:      {config.poll_interval_seconds}s")
        print(f"Command timeout:    {config.command_timeout}s")
        print(f"Logging level:      {config.logging.level}")
        print(f"Log file:           {config.logging.file}")
        print(f"Email:              {config.email.host or 'not configured (notifications are logged)'}")

        for error in config.validate():
            print(f"  ! {error}")
    except Exception as e:
        logger.error(f"Failed to show config: {e}")
        sys.exit(1)


def cmd_setup(args):
    """Store a recipe and run its setup commands."""
    setup_logging(verbose=args.verbose)

    try:
        config = _load_config(args)
        recipe = load_recipe_file(args.recipe)
        client = _client(config)
        install_recipe(client.store, recipe)
        run_setup(recipe, config.source_location, PipelineRunner(timeout=config.command_timeout))
        logger.info(f"Recipe '{recipe.name}' is ready; start the worker with: datastash start")
    except SetupFailed as e:
        logger.error(str(e))
        sys.exit(1)
    except (RecipeInvalid, ScheduleInvalid) as e:
        logger.error(f"Recipe rejected: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Setup failed: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_start(args):
    """Start the worker."""
    config = _load_config(args)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        config=config
    )

    logger.info("Starting datastash worker...")

    try:
        service = SchedulerService(config, foreground=args.foreground)
        service.start()

        if not args.foreground and service.is_running():
            logger.info("Worker is running in the background; use 'datastash stop' to stop it")
            try:
                while service.is_running():
                    time.sleep(1)
            except (KeyboardInterrupt, SystemExit):
                logger.info("Shutting down...")
                service.stop()

    except NotFound:
        logger.error("No recipe found; run 'datastash setup RECIPE.json' first")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to start worker: {e}", exc_info=True)
        sys.exit(1)


def cmd_stop(args):
    """Stop the worker."""
    setup_logging(verbose=args.verbose)

    config = StashConfig(args.config, data_dir=args.data_dir)
    running, pid = is_service_running(config)
    if not running:
        logger.warning("Datastash does not appear to be running (no PID file)")
        return

    try:
        logger.info(f"Stopping worker (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        for _ in range(10):
            time.sleep(1)
            running, _ = is_service_running(config)
            if not running:
                logger.info("Worker stopped successfully")
                return

        logger.warning("Worker did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)
    except OSError as e:
        logger.error(f"Failed to stop worker: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show worker status and run statistics."""
    setup_logging(verbose=args.verbose)

    try:
        config = _load_config(args)
        info = get_service_info(config)
        status = _client(config).get_status()
        recipe, stats = status['recipe'], status['status']

        if args.json:
            print(json.dumps({'recipe': recipe.to_dict(), 'status': stats, 'worker': info}, indent=2))
            return

        print()
        if info:
            print(f"  Worker:     \033[92m● Running\033[0m (PID {info['pid']}, since {info.get('started_at', 'N/A')})")
        else:
            print("  Worker:     \033[91m○ Not Running\033[0m")
        print(f"  Recipe:     {recipe.name}")
        print(f"  Schedule:   {recipe.schedule or 'manual only'}")
        print(f"  Triggers:   {', '.join(t.recipient for t in recipe.triggers) or 'none'}")
        print()
        print(f"  Runs:          {stats['numberRuns']} finished, {stats['numberRunsQueued']} queued")
        if stats['running']:
            print(f"  Running:       {stats['running']}")
        print(f"  Successful:    {stats['numberRunsSuccessful']}")
        rate = stats['successRate']
        print(f"  Success rate:  {'-' if rate is None else f'{rate}%'}")
        print(f"  Average time:  {_format_duration(stats['averageRunTime'])}")
        print(f"  Last success:  {stats['dateLastSuccessfulRun'] or '-'}")
        print()

    except NotFound:
        print("\nNo recipe found; run 'datastash setup RECIPE.json' first")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to get status: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_run(args):
    """Queue a manual run."""
    setup_logging(verbose=args.verbose)

    try:
        config = _load_config(args)
        run = _client(config).enqueue(MANUAL)
        if run is None:
            print("A manual run is already queued")
        else:
            print(f"Queued run {run.id}")
            if not is_service_running(config)[0]:
                print("Note: the worker is not running; start it with 'datastash start'")
    except StashError as e:
        logger.error(f"Failed to queue run: {e}")
        sys.exit(1)


def cmd_history(args):
    """Show run history."""
    try:
        config = _load_config(args)
        runs = _client(config).list_runs(state=args.state, limit=None if args.show_all else args.limit)

        if args.json:
            print(json.dumps([dict(run.to_dict(), id=run.id) for run in runs], indent=2))
            return

        if not runs:
            print("\nNo runs found.")
            return

        headers = ['Run ID', 'Initiator', 'Started', 'Elapsed', 'Added', 'Removed', 'State']
        rows = [
            [
                run.id,
                run.initiator,
                (run.date_started or '-')[:19],
                _format_duration(run.duration),
                '-' if run.records_added is None else str(run.records_added),
                '-' if run.records_removed is None else str(run.records_removed),
                run.state,
            ]
            for run in runs
        ]
        widths = [max(len(headers[i]), max(len(row[i]) for row in rows)) for i in range(len(headers))]

        def make_separator(left, mid, right):
            return left + mid.join('─' * (w + 2) for w in widths) + right

        print()
        print(make_separator('┌', '┬', '┐'))
        print("│ " + " │ ".join(h.ljust(w) for h, w in zip(headers, widths)) + " │")
        print(make_separator('├', '┼', '┤'))
        for run, row in zip(runs, rows):
            cells = [cell.ljust(w) for cell, w in zip(row, widths)]
            cells[-1] = _colored(run.state, args.color) + ' ' * (widths[-1] - len(run.state))
            print("│ " + " │ ".join(cells) + " │")
            if args.verbose and run.error:
                print(f"│   └─ Error: {run.error[:80]}")
        print(make_separator('└', '┴', '┘'))
        print(f"\nShowing {len(runs)} run(s)")

    except Exception as e:
        print(f"Error reading history: {e}")
        sys.exit(1)


def cmd_show(args):
    """Show one run."""
    try:
        config = _load_config(args)
        run = _client(config).get_run(args.run_id)
        data = asdict(run)
        data.pop('revision')
        if not args.full:
            data['execution'] = [
                {'command': c['command'], 'exit_code': c['exit_code'], 'log_entries': len(c['log'])}
                for c in data['execution']
            ]
        print(json.dumps(data, indent=2))
    except NotFound:
        print(f"Run {args.run_id} not found")
        sys.exit(1)


def cmd_log(args):
    """Print a run's captured command output."""
    try:
        config = _load_config(args)
        log = _client(config).get_run_execution_log(args.run_id, since=args.since)
        command = None
        for entry in log['log']:
            if entry['command'] != command:
                command = entry['command']
                print(f"$ {command}")
            stream = sys.stderr if entry['stream'] == 'stderr' else sys.stdout
            stream.write(entry['data'])
    except NotFound:
        print(f"Run {args.run_id} not found")
        sys.exit(1)


def cmd_data(args):
    """Print the data a run collected."""
    try:
        config = _load_config(args)
        client = _client(config)
        if args.added:
            data = client.get_run_data_added(args.run_id, as_csv=args.csv)
        elif args.removed:
            data = client.get_run_data_removed(args.run_id, as_csv=args.csv)
        else:
            data = client.get_run_data(args.run_id, as_csv=args.csv)
        print(data if args.csv else json.dumps(data, indent=2), end='' if args.csv else '\n')
    except NotFound:
        print(f"No data for run {args.run_id} (only successful runs keep data)")
        sys.exit(1)


def cmd_modify(args):
    """Replace the stored recipe."""
    setup_logging(verbose=args.verbose)

    try:
        config = _load_config(args)
        client = _client(config)
        recipe = load_recipe_file(args.recipe)
        revision = args.revision or client.get_recipe().revision
        saved = client.modify_recipe(recipe, revision=revision)
        print(f"Recipe '{saved.name}' saved (revision {saved.revision})")
        if is_service_running(config)[0]:
            print("The running worker picks up the new schedule on its next poll")
    except Conflict:
        logger.error("The recipe was modified by someone else; re-read it and try again")
        sys.exit(1)
    except (RecipeInvalid, ScheduleInvalid) as e:
        logger.error(f"Recipe rejected: {e}")
        sys.exit(1)
    except NotFound:
        logger.error("No recipe found; run 'datastash setup RECIPE.json' first")
        sys.exit(1)


def cmd_recover(args):
    """Mark runs abandoned by a dead worker as system errors."""
    setup_logging(verbose=args.verbose)

    config = _load_config(args)
    running, pid = is_service_running(config)
    if running:
        logger.error(f"The worker is running (PID: {pid}); stop it before recovering runs")
        sys.exit(1)

    recovered = _client(config).recover_stuck_runs()
    if recovered:
        print(f"Recovered {len(recovered)} run(s): {', '.join(recovered)}")
    else:
        print("No stuck runs")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Datastash - run data-collecting recipes and report what changed",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('-c', '--config', type=str, help='Path to configuration file')
    parser.add_argument('--data-dir', type=str, help='Base data directory')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    init_parser = subparsers.add_parser('init', help='Initialize configuration')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    setup_parser = subparsers.add_parser('setup', help='Store a recipe and run its setup commands')
    setup_parser.add_argument('recipe', help='Recipe JSON file')
    setup_parser.set_defaults(func=cmd_setup)

    start_parser = subparsers.add_parser('start', help='Start the worker')
    start_parser.add_argument('--foreground', action='store_true', help='Run in foreground (blocking mode)')
    start_parser.add_argument('--log-file', type=str, help='Log file path')
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Stop the worker')
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser('status', help='Show worker status and run statistics')
    status_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    status_parser.set_defaults(func=cmd_status)

    run_parser = subparsers.add_parser('run', help='Queue a manual run')
    run_parser.set_defaults(func=cmd_run)

    history_parser = subparsers.add_parser('history', help='View run history')
    history_parser.add_argument('--state', '-s', type=str,
                                choices=[QUEUED, RUNNING, SUCCESS, FAILURE, SYSTEM_ERROR],
                                help='Filter by state')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all runs')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.add_argument('--color', action='store_true', help='Colorize state output')
    history_parser.set_defaults(func=cmd_history)

    show_parser = subparsers.add_parser('show', help='Show one run')
    show_parser.add_argument('run_id', help='Run ID')
    show_parser.add_argument('--full', action='store_true', help='Include captured output')
    show_parser.set_defaults(func=cmd_show)

    log_parser = subparsers.add_parser('log', help="Print a run's command output")
    log_parser.add_argument('run_id', help='Run ID')
    log_parser.add_argument('--since', type=int, default=0, help='Skip the first N log entries')
    log_parser.set_defaults(func=cmd_log)

    data_parser = subparsers.add_parser('data', help='Print the data a run collected')
    data_parser.add_argument('run_id', help='Run ID')
    which = data_parser.add_mutually_exclusive_group()
    which.add_argument('--added', action='store_true', help='Only rows added since the previous run')
    which.add_argument('--removed', action='store_true', help='Only rows removed since the previous run')
    data_parser.add_argument('--csv', action='store_true', help='Output CSV instead of JSON')
    data_parser.set_defaults(func=cmd_data)

    modify_parser = subparsers.add_parser('modify', help='Replace the recipe')
    modify_parser.add_argument('recipe', help='Recipe JSON file')
    modify_parser.add_argument('--revision', type=str,
                               help='Revision being replaced (fails if the recipe changed since)')
    modify_parser.set_defaults(func=cmd_modify)

    recover_parser = subparsers.add_parser('recover', help='Mark runs left running by a dead worker as failed')
    recover_parser.set_defaults(func=cmd_recover)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
