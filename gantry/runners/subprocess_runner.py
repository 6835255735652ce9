"""Process runner backed by ``subprocess``."""

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Callable, List, Mapping, Optional

from gantry.pipeline.cancellation import CancellationToken
from gantry.runners.base import ProcessResult, ProcessRunner
from gantry.utils.helpers import truncate_output

logger = logging.getLogger(__name__)


class SubprocessRunner(ProcessRunner):
    """Run shell commands, stopping them when the cancellation token fires.

    Cancellation sends SIGTERM to the process group, then SIGKILL once
    ``kill_grace_seconds`` have passed without the process exiting.
    """

    def __init__(self, kill_grace_seconds: float = 5.0, poll_interval: float = 0.05, shell: str = "/bin/sh"):
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval = poll_interval
        self.shell = shell

    def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        token: Optional[CancellationToken] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        start = time.time()
        if cwd:
            os.makedirs(cwd, exist_ok=True)

        logger.debug(f"Running command in {cwd or os.getcwd()}: {command}")
        proc = subprocess.Popen(
            [self.shell, "-c", command],
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )

        lines: List[str] = []
        reader = threading.Thread(target=self._drain, args=(proc, lines, on_output), daemon=True)
        reader.start()

        cancelled = False
        killed = False
        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if token is not None and token.cancelled:
                cancelled = True
                killed = self._stop(proc)
                break

        reader.join(timeout=self.kill_grace_seconds)
        duration_ms = int((time.time() - start) * 1000)
        if cancelled:
            logger.warning(f"Command cancelled after {duration_ms}ms: {command}")

        return ProcessResult(
            command=command,
            exit_code=proc.returncode,
            output=truncate_output("".join(lines)),
            duration_ms=duration_ms,
            cancelled=cancelled,
            killed=killed,
        )

    def _drain(self, proc: subprocess.Popen, lines: List[str], on_output: Optional[Callable[[str], None]]) -> None:
        for line in proc.stdout:
            lines.append(line)
            if on_output is not None:
                try:
                    on_output(line.rstrip("\n"))
                except Exception as e:
                    logger.error(f"Error in output callback: {e}")
        proc.stdout.close()

    def _stop(self, proc: subprocess.Popen) -> bool:
        """Terminate, then kill after the grace period. Returns True if SIGKILL was needed."""
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace_seconds)
            return False
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM for {self.kill_grace_seconds}s, killing")
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()
            return True

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
