import asyncio
import shutil
import sys
import time

import psutil
import pytest

from cppjudge import sandbox as sandbox_module
from cppjudge.errors import InternalError
from cppjudge.sandbox import Sandbox, ExecutionStatus

# Generous ceiling so interpreter start-up never trips it
MEMORY = 1024 * 1024

SQUARE = "n = int(input())\nprint(n * n)\n"
LOOP = "while True:\n    pass\n"
CRASH = "import sys\nsys.stderr.write('boom')\nsys.exit(3)\n"
SYNTAX_ERROR = "def f(:\n    return 1\n"

SQUARE_CPP = """
#include <iostream>
int main() { long long n; std::cin >> n; std::cout << n * n << std::endl; return 0; }
"""


@pytest.fixture
def sandbox():
    return Sandbox()


async def test_success_captures_stdout(sandbox):
    outcome = await sandbox.execute(SQUARE, "python", "12\n", time_limit=5000, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.SUCCESS
    assert outcome.stdout == "144\n"
    assert outcome.exit_code == 0
    assert 0 <= outcome.run_time <= 5000


async def test_deadline_kills_program(sandbox):
    outcome = await sandbox.execute(LOOP, "python", "", time_limit=500, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.TIME_LIMIT
    assert outcome.run_time == 500


async def test_nonzero_exit_is_runtime_error(sandbox):
    outcome = await sandbox.execute(CRASH, "python", "", time_limit=5000, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.RUNTIME_ERROR
    assert outcome.exit_code == 3
    assert "boom" in outcome.stderr


async def test_compile_error_short_circuits_every_run(sandbox):
    async with sandbox.prepare(SYNTAX_ERROR, "python") as program:
        assert not program.compiled
        first = await program.run("1\n", 1000, MEMORY)
        second = await program.run("2\n", 1000, MEMORY)
    for outcome in (first, second):
        assert outcome.status == ExecutionStatus.COMPILE_ERROR
        assert "SyntaxError" in outcome.stderr


async def test_program_reused_across_inputs(sandbox):
    async with sandbox.prepare(SQUARE, "python") as program:
        outcomes = [await program.run(f"{n}\n", 5000, MEMORY) for n in (1, 2, 3)]
    assert [o.stdout for o in outcomes] == ["1\n", "4\n", "9\n"]


async def test_working_directory_removed_on_every_path(sandbox):
    async with sandbox.prepare(SQUARE, "python") as program:
        work_dir = program.work_dir
        assert work_dir.exists()
        await program.run("3\n", 5000, MEMORY)
    assert not work_dir.exists()

    with pytest.raises(RuntimeError):
        async with sandbox.prepare(LOOP, "python") as program:
            work_dir = program.work_dir
            await program.run("", 300, MEMORY)
            raise RuntimeError("caller failed")
    assert not work_dir.exists()


async def test_unknown_language_is_internal_error(sandbox):
    with pytest.raises(InternalError):
        await sandbox.execute("x", "brainfuck", "")


async def test_missing_interpreter_is_internal_error():
    sandbox = Sandbox({"ghost": {"source": "main.x", "run": ["/nonexistent/interpreter", "{source}"]}})
    with pytest.raises(InternalError):
        await sandbox.execute("x", "ghost", "")


async def test_concurrent_runs_do_not_interfere(sandbox):
    outcomes = await asyncio.gather(*(
        sandbox.execute(SQUARE, "python", f"{n}\n", time_limit=5000, memory_limit=MEMORY)
        for n in range(1, 6)
    ))
    assert [o.stdout for o in outcomes] == [f"{n * n}\n" for n in range(1, 6)]


async def test_peak_memory_is_sampled(sandbox):
    code = "import time\ndata = bytearray(8 * 1024 * 1024)\ntime.sleep(0.3)\nprint(len(data))\n"
    outcome = await sandbox.execute(code, "python", "", time_limit=5000, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.SUCCESS
    assert outcome.memory > 0


@pytest.mark.skipif(sys.platform == "win32", reason="address-space ceiling is POSIX only")
async def test_memory_ceiling_is_enforced(sandbox):
    code = "data = bytearray(512 * 1024 * 1024)\nprint(len(data))\n"
    outcome = await sandbox.execute(code, "python", "", time_limit=5000, memory_limit=256 * 1024)
    assert outcome.status == ExecutionStatus.RUNTIME_ERROR


@pytest.mark.skipif(shutil.which("g++") is None, reason="g++ not installed")
async def test_cpp_round_trip(sandbox):
    outcome = await sandbox.execute(SQUARE_CPP, "cpp", "9\n", time_limit=2000)
    assert outcome.status == ExecutionStatus.SUCCESS
    assert outcome.stdout.strip() == "81"

    broken = await sandbox.execute("int main( {", "cpp", "", time_limit=2000)
    assert broken.status == ExecutionStatus.COMPILE_ERROR
    assert "error" in broken.stderr


SPAWN_AND_LOOP = (
    "import subprocess, sys\n"
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "while True:\n"
    "    pass\n"
)
SPAWN_AND_EXIT = (
    "import subprocess, sys\n"
    "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print(child.pid)\n"
)


def process_gone(pid, wait=2.0):
    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


@pytest.mark.skipif(sys.platform == "win32", reason="process sessions are POSIX only")
async def test_deadline_also_kills_descendants(sandbox):
    started = time.monotonic()
    outcome = await sandbox.execute(SPAWN_AND_LOOP, "python", "", time_limit=800, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.TIME_LIMIT
    assert time.monotonic() - started < 5


@pytest.mark.skipif(sys.platform == "win32", reason="process sessions are POSIX only")
async def test_processes_left_behind_are_killed(sandbox):
    started = time.monotonic()
    outcome = await sandbox.execute(SPAWN_AND_EXIT, "python", "", time_limit=5000, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.SUCCESS
    assert time.monotonic() - started < 5
    assert process_gone(int(outcome.stdout))


async def test_oversized_output_is_runtime_error(sandbox, monkeypatch):
    monkeypatch.setattr(sandbox_module, "MAX_OUTPUT_SIZE", 100)
    outcome = await sandbox.execute("print('x' * 1000)\n", "python", "", time_limit=5000, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.RUNTIME_ERROR
    assert "Output too large" in outcome.stderr


async def test_slow_finish_is_time_limit(sandbox, monkeypatch):
    class SlowClock:
        """Every reading is one second after the last."""

        def __init__(self):
            self.now = 0.0

        def perf_counter(self):
            self.now += 1.0
            return self.now

    monkeypatch.setattr(sandbox_module, "time", SlowClock())
    outcome = await sandbox.execute(SQUARE, "python", "3\n", time_limit=800, memory_limit=MEMORY)
    assert outcome.status == ExecutionStatus.TIME_LIMIT
    assert outcome.run_time == 1000


async def test_compile_timeout_is_compile_error():
    sandbox = Sandbox({
        "slow": {
            "source": "main.py",
            "compile": [sys.executable, "-c", "import time; time.sleep(30)"],
            "run": [sys.executable, "{source}"],
        },
    }, compile_timeout=0.5)

    started = time.monotonic()
    async with sandbox.prepare(SQUARE, "slow") as program:
        assert not program.compiled
        assert program.compile_error == "Compilation timeout"
        outcome = await program.run("2\n", 1000, MEMORY)
    assert outcome.status == ExecutionStatus.COMPILE_ERROR
    assert outcome.stderr == "Compilation timeout"
    assert time.monotonic() - started < 5
