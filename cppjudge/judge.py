import logging
from dataclasses import dataclass, field

from cppjudge.checker import compare_output
from cppjudge.errors import NoTestCases, InternalError, ContractViolation, StoreError
from cppjudge.models import JudgeStatus, TestResult, utcnow
from cppjudge.sandbox import Sandbox, ExecutionStatus, ExecutionOutcome
from cppjudge.store import Store

logger = logging.getLogger(__name__)

# Stored per-case output is capped
MAX_STORED_OUTPUT = 64 * 1024

EXECUTION_TO_CASE_STATUS = {
    ExecutionStatus.COMPILE_ERROR: JudgeStatus.COMPILE_ERROR,
    ExecutionStatus.RUNTIME_ERROR: JudgeStatus.RUNTIME_ERROR,
    ExecutionStatus.TIME_LIMIT: JudgeStatus.TIME_LIMIT,
}


@dataclass
class JudgeResult:
    submission_id: int
    status: JudgeStatus
    run_time: int = 0
    memory: int = 0
    message: str = ""
    case_statuses: list = field(default_factory=list)
    failed_case: int = 0  # 1-based index of the first non-accepted case, 0 if AC


def classify(outcome: ExecutionOutcome, expected: str) -> JudgeStatus:
    """Map an execution outcome to the case status."""
    if outcome.status == ExecutionStatus.SUCCESS:
        if compare_output(expected, outcome.stdout):
            return JudgeStatus.ACCEPTED
        return JudgeStatus.WRONG_ANSWER
    return EXECUTION_TO_CASE_STATUS.get(outcome.status, JudgeStatus.INTERNAL_ERROR)


class Judge:
    """Drives one submission through every test case of its problem."""

    def __init__(self, store: Store, sandbox: Sandbox):
        self.store = store
        self.sandbox = sandbox

    async def evaluate(self, submission_id: int) -> JudgeResult:
        """Grade a stored submission and record the verdict.

        Raises NotFound or NoTestCases before anything is written when the
        submission, its problem or its test cases cannot be loaded. Problems
        while running individual cases end up in that case's verdict.
        """
        async with self.store.evaluation(submission_id):
            return await self._evaluate(submission_id)

    async def _evaluate(self, submission_id: int) -> JudgeResult:
        tag = f"[Judge #{submission_id}]"

        submission = await self.store.get_submission(submission_id)
        problem = await self.store.get_problem(submission.problem_id)
        test_cases = await self.store.get_test_cases(problem.id)
        if not test_cases:
            raise NoTestCases(f"Problem {problem.id} has no test cases")

        logger.info("%s Problem: %s, Language: %s, Cases: %d",
                    tag, problem.id, submission.language, len(test_cases))

        user_status = await self.store.get_user_problem_status(submission.user_id, submission.problem_id)

        submission.status = JudgeStatus.TESTING.value
        submission = await self.store.update_submission(submission)

        user_status.attempted = True
        user_status.last_attempt_at = utcnow()

        case_statuses = []
        max_time = 0
        max_memory = 0
        compile_message = ""

        try:
            async with self.sandbox.prepare(submission.code, submission.language, label=tag) as program:
                if not program.compiled:
                    compile_message = program.compile_error
                    logger.info("%s Compile Error: %s", tag, compile_message[:200])

                for idx, tc in enumerate(test_cases, 1):
                    result = await self._run_case(program, submission, tc, problem)
                    status = await self._record(tag, idx, result)
                    case_statuses.append(status)
                    max_time = max(max_time, result.run_time or 0)
                    max_memory = max(max_memory, result.memory or 0)
        except InternalError as e:
            # The program could not even be prepared; every case is an internal error.
            logger.error("%s Sandbox failure: %s", tag, e)
            compile_message = str(e)
            for idx, tc in enumerate(test_cases[len(case_statuses):], len(case_statuses) + 1):
                result = TestResult(submission_id=submission.id, test_case_id=tc.id,
                                    status=JudgeStatus.INTERNAL_ERROR.value, error_output=str(e))
                case_statuses.append(await self._record(tag, idx, result))

        accepted = all(s == JudgeStatus.ACCEPTED for s in case_statuses)
        verdict = JudgeStatus.ACCEPTED if accepted else JudgeStatus.FAILED
        failed_case = 0 if accepted else next(
            i for i, s in enumerate(case_statuses, 1) if s != JudgeStatus.ACCEPTED
        )

        if accepted:
            message = f"Passed {len(case_statuses)}/{len(case_statuses)} test cases"
        else:
            passed = sum(1 for s in case_statuses if s == JudgeStatus.ACCEPTED)
            message = (f"{case_statuses[failed_case - 1].value} on test {failed_case}, "
                       f"passed {passed}/{len(case_statuses)} test cases")
            if compile_message:
                message += f"\n{compile_message}"

        await self._update_user_status(tag, user_status, accepted)

        submission.status = verdict.value
        submission.run_time = max_time
        submission.memory = max_memory
        submission.message = message
        await self.store.update_submission(submission)

        logger.info("%s Result: %s, Time: %dms, Memory: %dKB", tag, verdict.value, max_time, max_memory)
        return JudgeResult(
            submission_id=submission.id,
            status=verdict,
            run_time=max_time,
            memory=max_memory,
            message=message,
            case_statuses=case_statuses,
            failed_case=failed_case,
        )

    async def _run_case(self, program, submission, tc, problem) -> TestResult:
        result = TestResult(submission_id=submission.id, test_case_id=tc.id)
        try:
            outcome = await program.run(tc.input, problem.time_limit, problem.memory_limit)
        except InternalError as e:
            result.status = JudgeStatus.INTERNAL_ERROR.value
            result.error_output = str(e)
            return result

        result.status = classify(outcome, tc.output).value
        result.output = outcome.stdout[:MAX_STORED_OUTPUT]
        result.error_output = outcome.stderr[:MAX_STORED_OUTPUT]
        result.run_time = outcome.run_time
        result.memory = outcome.memory
        return result

    async def _record(self, tag: str, idx: int, result: TestResult) -> JudgeStatus:
        """Persist one case result and return the status it counts as."""
        status = JudgeStatus(result.status)
        try:
            await self.store.add_test_result(result)
        except (StoreError, ContractViolation) as e:
            logger.error("%s Failed to save result of test %d: %s", tag, idx, e)
            if status == JudgeStatus.ACCEPTED:
                status = JudgeStatus.INTERNAL_ERROR
        logger.info("%s Test %d: %s (%dms)", tag, idx, status.value, result.run_time or 0)
        return status

    async def _update_user_status(self, tag: str, attempt, accepted: bool):
        # Re-read under the lock so concurrent evaluations for the same
        # user and problem do not lose each other's counts.
        async with self.store.user_status_lock(attempt.user_id, attempt.problem_id):
            try:
                status = await self.store.get_user_problem_status(attempt.user_id, attempt.problem_id)
                status.attempted = True
                status.last_attempt_at = attempt.last_attempt_at
                if accepted:
                    status.solved = True
                    if status.first_solved_at is None:
                        status.first_solved_at = utcnow()
                else:
                    status.failed_attempts = (status.failed_attempts or 0) + 1
                return await self.store.update_user_problem_status(status)
            except StoreError as e:
                logger.error("%s Failed to update user problem status: %s", tag, e)
                return None
