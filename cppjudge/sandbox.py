import asyncio
import enum
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from cppjudge.config import (
    LANGUAGES, COMPILE_TIMEOUT, MAX_OUTPUT_SIZE, MEMORY_SAMPLE_INTERVAL,
    ENFORCE_MEMORY_LIMIT, DEFAULT_TIME_LIMIT, DEFAULT_MEMORY_LIMIT,
)
from cppjudge.errors import InternalError

if sys.platform != "win32":
    import resource
else:
    resource = None

logger = logging.getLogger(__name__)

# Compiler diagnostics kept on the outcome
MAX_DIAGNOSTICS = 4000

# Largest value setrlimit accepts on every POSIX rlim_t
_RLIM_MAX = 2 ** 63 - 1


class ExecutionStatus(str, enum.Enum):
    COMPILE_ERROR = "Compilation Error"
    RUNTIME_ERROR = "Runtime Error"
    TIME_LIMIT = "Time Limit Exceeded"
    SUCCESS = "Success"


@dataclass
class ExecutionOutcome:
    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    run_time: int = 0  # ms
    memory: int = 0  # KB
    exit_code: Optional[int] = None


class _MemorySampler:
    """Polls the resident set size of a running process and keeps the peak."""

    def __init__(self, pid: int, interval: float = MEMORY_SAMPLE_INTERVAL):
        self.pid = pid
        self.interval = interval
        self.peak_kb = 0
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.create_task(self._poll())

    async def stop(self) -> int:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        return self.peak_kb

    async def _poll(self):
        try:
            proc = psutil.Process(self.pid)
            while True:
                self.peak_kb = max(self.peak_kb, proc.memory_info().rss // 1024)
                await asyncio.sleep(self.interval)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            # Process already exited (or became a zombie)
            return


def _memory_ceiling(memory_limit: int):
    """Build a preexec hook that caps the child's address space at memory_limit KB."""
    if not ENFORCE_MEMORY_LIMIT or resource is None or memory_limit <= 0:
        return None
    # Never ask for more than the host allows or rlim_t can hold
    _, hard = resource.getrlimit(resource.RLIMIT_AS)
    ceiling = _RLIM_MAX if hard == resource.RLIM_INFINITY or hard < 0 else hard
    limit_bytes = min(memory_limit * 1024, ceiling)

    def apply():
        resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))

    return apply


def _kill_group(pid: int):
    """Kill every process left in the session started for pid."""
    if sys.platform == "win32":
        return
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass  # group already empty


async def _kill(process):
    _kill_group(process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        pass  # already exited
    await process.wait()


class Program:
    """A compiled submission living in its own working directory."""

    def __init__(self, work_dir: Path, run_cmd: list, compile_error: Optional[str] = None, label: str = ""):
        self.work_dir = work_dir
        self.run_cmd = run_cmd
        self.compile_error = compile_error
        self.label = label
        self._runs = 0

    @property
    def compiled(self) -> bool:
        return self.compile_error is None

    async def run(self, input_data: str, time_limit: int = DEFAULT_TIME_LIMIT,
                  memory_limit: int = DEFAULT_MEMORY_LIMIT) -> ExecutionOutcome:
        """Run the program once with input_data on stdin.

        The deadline is exactly time_limit milliseconds. Raises InternalError
        when the run cannot be set up or the process cannot be spawned.
        """
        if self.compile_error is not None:
            return ExecutionOutcome(ExecutionStatus.COMPILE_ERROR, stderr=self.compile_error)

        self._runs += 1
        input_file = self.work_dir / f"input_{self._runs}.txt"
        output_file = self.work_dir / f"output_{self._runs}.txt"
        error_file = self.work_dir / f"error_{self._runs}.txt"

        try:
            input_file.write_text(input_data, encoding="utf-8")
            return await self._run(input_file, output_file, error_file, time_limit, memory_limit)
        except (OSError, subprocess.SubprocessError) as e:
            raise InternalError(f"{type(e).__name__}: {e}") from e
        finally:
            input_file.unlink(missing_ok=True)
            output_file.unlink(missing_ok=True)
            error_file.unlink(missing_ok=True)

    async def _run(self, input_file: Path, output_file: Path, error_file: Path,
                   time_limit: int, memory_limit: int) -> ExecutionOutcome:
        # All three streams are files, so only the child's own exit is awaited;
        # processes it leaves behind are killed with its session.
        with open(input_file, "rb") as fin, open(output_file, "wb") as fout, open(error_file, "wb") as ferr:
            start_time = time.perf_counter()
            process = await asyncio.create_subprocess_exec(
                *self.run_cmd,
                stdin=fin,
                stdout=fout,
                stderr=ferr,
                cwd=str(self.work_dir),
                preexec_fn=_memory_ceiling(memory_limit),
                start_new_session=True,
            )
            sampler = _MemorySampler(process.pid)
            sampler.start()

            timed_out = False
            try:
                await asyncio.wait_for(process.wait(), timeout=time_limit / 1000.0)
            except asyncio.TimeoutError:
                timed_out = True
                await _kill(process)
            except asyncio.CancelledError:
                await _kill(process)
                raise
            finally:
                _kill_group(process.pid)
                peak_kb = await sampler.stop()

            elapsed_ms = int((time.perf_counter() - start_time) * 1000)

        if timed_out:
            logger.debug("%s killed after %dms", self.label, elapsed_ms)
            return ExecutionOutcome(ExecutionStatus.TIME_LIMIT, run_time=time_limit, memory=peak_kb,
                                    exit_code=process.returncode)

        with open(error_file, "rb") as f:
            error_output = f.read(MAX_OUTPUT_SIZE).decode("utf-8", errors="replace")

        if process.returncode != 0:
            return ExecutionOutcome(ExecutionStatus.RUNTIME_ERROR, stderr=error_output or f"Exit code: {process.returncode}",
                                    run_time=elapsed_ms, memory=peak_kb, exit_code=process.returncode)

        if elapsed_ms > time_limit:
            return ExecutionOutcome(ExecutionStatus.TIME_LIMIT, run_time=elapsed_ms, memory=peak_kb,
                                    exit_code=process.returncode)

        output_size = output_file.stat().st_size
        if output_size > MAX_OUTPUT_SIZE:
            return ExecutionOutcome(ExecutionStatus.RUNTIME_ERROR,
                                    stderr=f"Output too large: {output_size} bytes (limit: {MAX_OUTPUT_SIZE})",
                                    run_time=elapsed_ms, memory=peak_kb, exit_code=process.returncode)

        return ExecutionOutcome(
            ExecutionStatus.SUCCESS,
            stdout=output_file.read_text(encoding="utf-8", errors="replace"),
            stderr=error_output,
            run_time=elapsed_ms,
            memory=peak_kb,
            exit_code=process.returncode,
        )


class Sandbox:
    """Compiles and runs submissions in private temporary directories.

    No state is shared between calls, so one instance can serve many
    evaluations at once. Confinement is limited to the wall-clock deadline
    and, on POSIX, an address-space ceiling.
    """

    def __init__(self, languages: Optional[dict] = None, compile_timeout: float = COMPILE_TIMEOUT):
        self.languages = LANGUAGES if languages is None else languages
        self.compile_timeout = compile_timeout

    def supports(self, language: str) -> bool:
        return language in self.languages

    @staticmethod
    def _expand(template: list, source: Path, binary: Path) -> list:
        return [arg.format(source=source, binary=binary) for arg in template]

    @asynccontextmanager
    async def prepare(self, code: str, language: str, label: str = "sandbox"):
        """Write and compile code once, yielding a Program for repeated runs.

        The working directory is removed when the block exits, however it exits.
        """
        if language not in self.languages:
            raise InternalError(f"Unknown language: {language}")
        toolchain = self.languages[language]

        try:
            work_dir = Path(tempfile.mkdtemp(prefix="cppjudge_"))
        except OSError as e:
            raise InternalError(f"Cannot create working directory: {e}") from e

        try:
            source = work_dir / toolchain["source"]
            binary = work_dir / toolchain.get("binary", "main")
            try:
                source.write_text(code, encoding="utf-8")
            except OSError as e:
                raise InternalError(f"Cannot write source file: {e}") from e

            compile_error = None
            if toolchain.get("compile"):
                compile_error = await self._compile(self._expand(toolchain["compile"], source, binary), work_dir, label)

            yield Program(work_dir, self._expand(toolchain["run"], source, binary), compile_error, label)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def _compile(self, cmd: list, work_dir: Path, label: str) -> Optional[str]:
        """Return None on success, otherwise the compiler diagnostics."""
        logger.debug("%s compile command: %s", label, " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(work_dir),
                start_new_session=True,
            )
        except OSError as e:
            raise InternalError(f"Cannot start compiler {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.compile_timeout)
        except asyncio.TimeoutError:
            await _kill(process)
            return "Compilation timeout"
        except asyncio.CancelledError:
            await _kill(process)
            raise

        if process.returncode != 0:
            diagnostics = stderr.decode("utf-8", errors="replace") or stdout.decode("utf-8", errors="replace")
            return (diagnostics or f"Compiler exited with code {process.returncode}")[:MAX_DIAGNOSTICS]
        return None

    async def execute(self, code: str, language: str, input_data: str,
                      time_limit: int = DEFAULT_TIME_LIMIT, memory_limit: int = DEFAULT_MEMORY_LIMIT) -> ExecutionOutcome:
        """Compile code and run it against a single input."""
        async with self.prepare(code, language) as program:
            return await program.run(input_data, time_limit, memory_limit)
