"""Bounded subprocess execution for the external tools the pipelines drive.

Every command runs with stdout and stderr merged, a wall-clock timeout and a
cap on captured output. Crossing either bound kills the process.
"""

import functools
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from app.services.errors import ToolExecutionError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
POLL_INTERVAL = 0.1
OUTPUT_TAIL_CHARS = 2000


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    command: List[str]
    return_code: int
    output: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.return_code == 0

    @property
    def lines(self) -> List[str]:
        return self.output.splitlines()

    def tail(self, chars: int = OUTPUT_TAIL_CHARS) -> str:
        return self.output[-chars:]


def _kill(process: subprocess.Popen) -> None:
    try:
        process.kill()
    except OSError:
        pass
    process.wait()


def run_command(
    cmd: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: float = 300,
    max_output_bytes: int = 100 * 1024 * 1024,
    check: bool = True,
) -> CommandResult:
    """
    Run ``cmd`` and capture its combined output.

    Parameters
    ----------
    cmd : sequence of str
        Program and arguments (no shell).
    cwd : path, optional
        Working directory.
    timeout : float
        Seconds before the process is killed.
    max_output_bytes : int
        Captured output beyond this size kills the process.
    check : bool
        Raise ToolExecutionError on a non-zero exit code.

    Returns
    -------
    CommandResult
    """
    cmd = [str(part) for part in cmd]
    logger.info(f"Running: {' '.join(cmd)}" + (f" (cwd={cwd})" if cwd else ""))
    started = time.monotonic()

    try:
        process = subprocess.Popen(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
        )
    except OSError as e:
        raise ToolExecutionError(f"Could not start {cmd[0]}: {e}", command=cmd) from e

    chunks: List[bytes] = []
    overflow = threading.Event()

    # Drain the pipe on a separate thread so the child never blocks on a full pipe
    def _reader(pipe) -> None:
        total = 0
        try:
            for chunk in iter(functools.partial(pipe.read1, READ_CHUNK_SIZE), b""):
                total += len(chunk)
                if total > max_output_bytes:
                    overflow.set()
                    return
                chunks.append(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill
            return

    reader = threading.Thread(target=_reader, args=(process.stdout,), daemon=True)
    reader.start()

    deadline = started + timeout
    try:
        while True:
            if overflow.is_set():
                _kill(process)
                raise ToolExecutionError(
                    f"{cmd[0]} produced more than {max_output_bytes} bytes of output",
                    command=cmd,
                    output=_decode(chunks)[-OUTPUT_TAIL_CHARS:],
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _kill(process)
                raise ToolExecutionError(
                    f"{cmd[0]} timed out after {timeout:g} seconds",
                    command=cmd,
                    output=_decode(chunks)[-OUTPUT_TAIL_CHARS:],
                )
            try:
                return_code = process.wait(timeout=min(POLL_INTERVAL, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        # Grandchildren may keep the pipe open after the child exits
        reader.join(timeout=5)
        if overflow.is_set():
            raise ToolExecutionError(
                f"{cmd[0]} produced more than {max_output_bytes} bytes of output",
                command=cmd,
                return_code=return_code,
            )
    finally:
        if process.stdout:
            try:
                process.stdout.close()
            except OSError:
                pass

    result = CommandResult(
        command=cmd,
        return_code=return_code,
        output=_decode(chunks),
        duration=time.monotonic() - started,
    )
    logger.info(f"{cmd[0]} exited with {return_code} after {result.duration:.1f}s")

    if check and not result.ok:
        raise ToolExecutionError(
            f"{cmd[0]} failed with return code {return_code}: {result.tail(500).strip()}",
            command=cmd,
            return_code=return_code,
            output=result.tail(),
        )
    return result


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")
