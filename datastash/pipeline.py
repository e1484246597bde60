"""
Shell pipeline execution for recipes.

Runs an ordered list of shell commands in a working directory, capturing
each command's stdout and stderr as it arrives. Execution stops at the
first command that exits non-zero; failure is reported in the results,
not raised.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, Optional, List

from datastash.errors import SetupFailed
from datastash.models import CommandResult, LogEntry, Recipe

logger = logging.getLogger(__name__)


def pipeline_failed(results: List[CommandResult]) -> bool:
    """True when any command in the results exited non-zero."""
    return any(result.failed for result in results)


class PipelineRunner:
    """
    Executes shell commands sequentially with captured output.

    Both output streams are drained on their own threads while the process
    runs, so a chatty command can never block on a full pipe.
    """

    def __init__(self, timeout: Optional[int] = 3600, env: Optional[Dict[str, str]] = None):
        """
        Initialize pipeline runner.

        Args:
            timeout: Per-command timeout in seconds (None for no limit)
            env: Environment for commands (inherits the current one if None)
        """
        self.timeout = timeout
        self.env = env

    def execute_command(
        self,
        command: str,
        working_dir: Path,
        log_prefix: str = ""
    ) -> CommandResult:
        """
        Execute a shell command.

        Args:
            command: Shell command to execute
            working_dir: Working directory for command execution
            log_prefix: Context prefix for log lines

        Returns:
            CommandResult with exit code and captured log
        """
        logger.info(f"{log_prefix}Executing command: {command}")

        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(working_dir),
            env=self.env,
            start_new_session=True
        )

        log: List[LogEntry] = []
        log_lock = threading.Lock()

        def read_stream(stream, name):
            for chunk in iter(stream.readline, b''):
                text = chunk.decode('utf-8', errors='replace')
                with log_lock:
                    log.append(LogEntry(stream=name, data=text))
                logger.debug(f"{log_prefix}{name}: {text.rstrip()}")
            stream.close()

        stdout_thread = threading.Thread(target=read_stream, args=(process.stdout, 'stdout'), daemon=True)
        stderr_thread = threading.Thread(target=read_stream, args=(process.stderr, 'stderr'), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        timed_out = False
        try:
            process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            # the shell and everything it started
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            process.wait()

        stdout_thread.join()
        stderr_thread.join()

        exit_code = process.returncode
        if timed_out:
            logger.error(f"{log_prefix}Command timed out after {self.timeout}s: {command}")
            log.append(LogEntry(stream='stderr', data=f"Command timed out after {self.timeout}s\n"))
            # a killed process reports a negative code; keep it non-zero either way
            exit_code = exit_code or -9

        if exit_code != 0:
            logger.warning(f"{log_prefix}Command exited {exit_code}: {command}")

        return CommandResult(command=command, exit_code=exit_code, log=log)

    def execute_pipeline(
        self,
        working_dir: Path,
        commands: List[str],
        log_prefix: str = ""
    ) -> List[CommandResult]:
        """
        Execute commands in order, stopping after the first failure.

        Args:
            working_dir: Working directory shared by all commands
            commands: Ordered shell commands
            log_prefix: Context prefix for log lines

        Returns:
            Results of every command that ran; the last one is the failure,
            if any. An empty command list gives an empty, successful result.
        """
        results = []
        for command in commands:
            result = self.execute_command(command, working_dir, log_prefix=log_prefix)
            results.append(result)
            if result.failed:
                break
        return results


def run_setup(
    recipe: Recipe,
    working_dir: Path,
    runner: Optional[PipelineRunner] = None,
    stdout=None,
    stderr=None
) -> List[CommandResult]:
    """
    Prepare the working directory by running the recipe's setup commands.

    Captured output is replayed to stdout/stderr afterwards.

    Raises:
        SetupFailed: If any setup command exits non-zero
    """
    runner = runner or PipelineRunner()
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    working_dir = Path(working_dir)
    working_dir.mkdir(parents=True, exist_ok=True)

    logger.info(f"[{recipe.name}] Running {len(recipe.setup)} setup command(s) in {working_dir}")
    results = runner.execute_pipeline(working_dir, recipe.setup, log_prefix=f"[{recipe.name}:setup] ")

    for result in results:
        for entry in result.log:
            (stderr if entry.stream == 'stderr' else stdout).write(entry.data)

    if pipeline_failed(results):
        raise SetupFailed(results)

    logger.info(f"[{recipe.name}] Setup completed")
    return results
