import asyncio
import logging
import os
import signal
import subprocess
import time
from typing import List, Sequence

from .errors import BinaryError, TimeoutError
from .models import ExecutionOptions, ExecutionResult


logger = logging.getLogger(__name__)


def _terminate_process(proc: subprocess.Popen) -> None:
    if os.name != "nt":
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            return
        except (OSError, AttributeError):
            pass
    try:
        proc.kill()
    except OSError:
        pass


def _popen_kwargs() -> dict:
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    # Own process group so a timeout kills the engine and any children.
    return {"start_new_session": True}


class ProcessRunner:
    """
    Run the engine once with a hard timeout.

    A non-zero exit code is returned to the caller as-is; only spawn
    failures (BinaryError) and timeouts (TimeoutError) raise.
    """

    def run_sync(self, executable: str, args: Sequence[str], options: ExecutionOptions) -> ExecutionResult:
        command: List[str] = [executable] + list(args)
        timeout_sec = max(options.timeout_ms, 1) / 1000.0
        logger.debug("Running %s (cwd=%s, timeout=%sms)", command, options.cwd, options.timeout_ms)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                command,
                cwd=options.cwd,
                stdin=subprocess.PIPE if options.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **_popen_kwargs()
            )
        except FileNotFoundError as exc:
            raise BinaryError(f"ast-grep executable not found: {executable}") from exc
        except PermissionError as exc:
            raise BinaryError(f"ast-grep executable is not executable: {executable}") from exc
        except OSError as exc:
            raise BinaryError(f"Failed to start ast-grep ({executable}): {exc}") from exc

        try:
            stdout, stderr = proc.communicate(input=options.stdin, timeout=timeout_sec)
        except subprocess.TimeoutExpired:
            _terminate_process(proc)
            try:
                # Reap the child; partial output is discarded.
                proc.communicate(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("ast-grep process %s did not exit after kill", proc.pid)
            logger.warning("ast-grep timed out after %sms and was terminated", options.timeout_ms)
            raise TimeoutError(
                f"ast-grep did not finish within {options.timeout_ms}ms and was terminated.",
                context={"timeoutMs": options.timeout_ms}
            )
        except BaseException:
            _terminate_process(proc)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        return ExecutionResult(
            stdout=stdout or "",
            stderr=stderr or "",
            returncode=proc.returncode,
            duration_ms=duration_ms
        )

    async def run(self, executable: str, args: Sequence[str], options: ExecutionOptions) -> ExecutionResult:
        return await asyncio.to_thread(self.run_sync, executable, args, options)
