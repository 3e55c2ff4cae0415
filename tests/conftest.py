from contextlib import asynccontextmanager

import pytest

from cppjudge.errors import InternalError
from cppjudge.models import make_session_factory, init_db, Problem, TestCase, Submission
from cppjudge.sandbox import ExecutionOutcome, ExecutionStatus
from cppjudge.store import Store


@pytest.fixture
async def store(tmp_path):
    engine, session_factory = make_session_factory(f"sqlite+aiosqlite:///{tmp_path}/judge.db")
    await init_db(engine)
    yield Store(session_factory)
    await engine.dispose()


async def add_problem(store, cases=(("2\n", "4\n"),), time_limit=1000, memory_limit=262144):
    problem = await store.add_problem(
        Problem(title="square", time_limit=time_limit, memory_limit=memory_limit),
        [TestCase(input=i, output=o, is_example=(n == 0)) for n, (i, o) in enumerate(cases)],
    )
    return problem


async def add_submission(store, problem, code="square", user_id=7, language="cpp"):
    return await store.add_submission(
        Submission(user_id=user_id, problem_id=problem.id, code=code, language=language)
    )


def success(stdout, run_time=10, memory=512):
    return ExecutionOutcome(ExecutionStatus.SUCCESS, stdout=stdout, run_time=run_time, memory=memory, exit_code=0)


def square_responder(code, input_data):
    """Scripted behaviour keyed by the submission's code."""
    n = int(input_data.strip())
    if code == "square":
        return success(f"{n * n}\n", run_time=n, memory=100 * n)
    if code == "square-no-newline":
        return success(f"{n * n}")
    if code == "double":
        return success(f"{n * 2}\n")
    if code == "loop":
        return ExecutionOutcome(ExecutionStatus.TIME_LIMIT, run_time=500)
    if code == "crash":
        return ExecutionOutcome(ExecutionStatus.RUNTIME_ERROR, stderr="Segmentation fault", exit_code=-11)
    if code == "flaky" and n == 3:
        raise InternalError("cannot spawn process")
    if code == "flaky":
        return success(f"{n * n}\n")
    raise AssertionError(f"unscripted code {code!r}")


class FakeProgram:
    def __init__(self, sandbox, code, compile_error=None):
        self.sandbox = sandbox
        self.code = code
        self.compile_error = compile_error

    @property
    def compiled(self):
        return self.compile_error is None

    async def run(self, input_data, time_limit, memory_limit):
        if self.compile_error is not None:
            return ExecutionOutcome(ExecutionStatus.COMPILE_ERROR, stderr=self.compile_error)
        self.sandbox.runs.append((self.code, input_data, time_limit))
        if self.sandbox.before_run is not None:
            await self.sandbox.before_run(self.code)
        return self.sandbox.responder(self.code, input_data)


class FakeSandbox:
    """Stands in for the process backend; behaviour is scripted per code string."""

    languages = {"cpp": {}, "python": {}}

    def __init__(self, responder=square_responder, before_run=None):
        self.responder = responder
        self.before_run = before_run
        self.prepared = []
        self.runs = []

    def supports(self, language):
        return language in self.languages

    @asynccontextmanager
    async def prepare(self, code, language, label=""):
        self.prepared.append(code)
        if code == "broken":
            yield FakeProgram(self, code, compile_error="main.cpp:1:1: error: expected unqualified-id")
        else:
            yield FakeProgram(self, code)


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()
