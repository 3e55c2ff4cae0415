import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError

from cppjudge.errors import NotFound, ContractViolation, StoreError
from cppjudge.models import (
    async_session, utcnow, JudgeStatus,
    Problem, TestCase, Submission, TestResult, UserProblemStatus,
)

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._locks = {}  # key -> [lock, users]

    @asynccontextmanager
    async def hold(self, key):
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def locked(self, key) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()


class Store:
    """Persistence for problems, submissions, test results and per-user progress.

    Every operation runs in its own transaction, so concurrent readers only
    ever see committed records. Returned objects are detached snapshots.
    """

    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory
        self._evaluations = KeyedLocks()
        self._user_status = KeyedLocks()

    @asynccontextmanager
    async def _session(self):
        async with self.session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.warning("Store operation failed: %s", e)
                raise StoreError(f"{type(e).__name__}: {e}") from e

    # ===== Serialization =====

    def evaluation(self, submission_id: int):
        """Hold while evaluating a submission; evaluations of one id run one at a time."""
        return self._evaluations.hold(submission_id)

    def is_evaluating(self, submission_id: int) -> bool:
        return self._evaluations.locked(submission_id)

    def user_status_lock(self, user_id: int, problem_id: int):
        return self._user_status.hold((user_id, problem_id))

    # ===== Problems =====

    async def add_problem(self, problem: Problem, test_cases: Optional[list] = None) -> Problem:
        async with self._session() as session:
            session.add(problem)
            await session.flush()
            for tc in test_cases or []:
                tc.problem_id = problem.id
                session.add(tc)
            await session.commit()
            return problem

    async def get_problem(self, problem_id: int) -> Problem:
        async with self._session() as session:
            problem = await session.get(Problem, problem_id)
            if problem is None:
                raise NotFound(f"Problem {problem_id} not found")
            return problem

    async def list_problems(self) -> list:
        async with self._session() as session:
            result = await session.execute(select(Problem).order_by(Problem.id))
            return list(result.scalars().all())

    async def update_problem(self, problem_id: int, **fields) -> Problem:
        async with self._session() as session:
            problem = await session.get(Problem, problem_id)
            if problem is None:
                raise NotFound(f"Problem {problem_id} not found")
            for name, value in fields.items():
                if value is not None:
                    setattr(problem, name, value)
            await session.commit()
            return problem

    async def delete_problem(self, problem_id: int):
        async with self._session() as session:
            problem = await session.get(Problem, problem_id)
            if problem is None:
                raise NotFound(f"Problem {problem_id} not found")
            await session.execute(delete(TestCase).where(TestCase.problem_id == problem_id))
            await session.delete(problem)
            await session.commit()

    # ===== Test cases =====

    async def get_test_cases(self, problem_id: int, examples_only: bool = False) -> list:
        """Test cases of a problem in creation order."""
        async with self._session() as session:
            query = select(TestCase).where(TestCase.problem_id == problem_id)
            if examples_only:
                query = query.where(TestCase.is_example.is_(True))
            result = await session.execute(query.order_by(TestCase.id))
            return list(result.scalars().all())

    async def add_test_cases(self, problem_id: int, test_cases: list) -> list:
        async with self._session() as session:
            if await session.get(Problem, problem_id) is None:
                raise NotFound(f"Problem {problem_id} not found")
            for tc in test_cases:
                tc.problem_id = problem_id
                session.add(tc)
            await session.commit()
            return test_cases

    async def replace_test_cases(self, problem_id: int, test_cases: list) -> list:
        async with self._session() as session:
            if await session.get(Problem, problem_id) is None:
                raise NotFound(f"Problem {problem_id} not found")
            await session.execute(delete(TestCase).where(TestCase.problem_id == problem_id))
            for tc in test_cases:
                tc.problem_id = problem_id
                session.add(tc)
            await session.commit()
            return test_cases

    # ===== Submissions =====

    async def add_submission(self, submission: Submission) -> Submission:
        async with self._session() as session:
            if await session.get(Problem, submission.problem_id) is None:
                raise NotFound(f"Problem {submission.problem_id} not found")
            now = utcnow()
            submission.status = JudgeStatus.PENDING.value
            submission.created_at = now
            submission.submitted_at = now
            session.add(submission)
            await session.commit()
            return submission

    async def get_submission(self, submission_id: int) -> Submission:
        async with self._session() as session:
            submission = await session.get(Submission, submission_id)
            if submission is None:
                raise NotFound(f"Submission {submission_id} not found")
            return submission

    async def update_submission(self, submission: Submission) -> Submission:
        async with self._session() as session:
            if await session.get(Submission, submission.id) is None:
                raise NotFound(f"Submission {submission.id} not found")
            merged = await session.merge(submission)
            await session.commit()
            return merged

    async def list_submissions(self, problem_id: Optional[int] = None, user_id: Optional[int] = None,
                               limit: int = 50) -> list:
        async with self._session() as session:
            query = select(Submission).order_by(Submission.id.desc()).limit(limit)
            if problem_id is not None:
                query = query.where(Submission.problem_id == problem_id)
            if user_id is not None:
                query = query.where(Submission.user_id == user_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    # ===== Test results =====

    async def add_test_result(self, result: TestResult) -> TestResult:
        """Append a result. Rejects results whose test case is not part of the submission's problem."""
        async with self._session() as session:
            submission = await session.get(Submission, result.submission_id)
            if submission is None:
                raise ContractViolation(f"Submission {result.submission_id} does not exist")
            test_case = await session.get(TestCase, result.test_case_id)
            if test_case is None or test_case.problem_id != submission.problem_id:
                raise ContractViolation(
                    f"Test case {result.test_case_id} does not belong to problem {submission.problem_id}"
                )
            session.add(result)
            await session.commit()
            return result

    async def get_test_results(self, submission_id: int) -> list:
        async with self._session() as session:
            result = await session.execute(
                select(TestResult).where(TestResult.submission_id == submission_id).order_by(TestResult.id)
            )
            return list(result.scalars().all())

    # ===== User progress =====

    async def get_user_problem_status(self, user_id: int, problem_id: int) -> UserProblemStatus:
        """Stored progress, or a fresh unsaved record when the user never tried the problem."""
        async with self._session() as session:
            result = await session.execute(
                select(UserProblemStatus).where(
                    UserProblemStatus.user_id == user_id,
                    UserProblemStatus.problem_id == problem_id,
                )
            )
            status = result.scalars().first()
            if status is None:
                status = UserProblemStatus(
                    user_id=user_id,
                    problem_id=problem_id,
                    attempted=False,
                    solved=False,
                    failed_attempts=0,
                )
            return status

    async def update_user_problem_status(self, status: UserProblemStatus) -> UserProblemStatus:
        """Upsert progress. solved never goes back to False and first_solved_at is written once."""
        async with self._session() as session:
            result = await session.execute(
                select(UserProblemStatus).where(
                    UserProblemStatus.user_id == status.user_id,
                    UserProblemStatus.problem_id == status.problem_id,
                )
            )
            stored = result.scalars().first()
            if stored is None:
                stored = UserProblemStatus(user_id=status.user_id, problem_id=status.problem_id,
                                           created_at=utcnow())
                session.add(stored)

            stored.attempted = bool(stored.attempted) or bool(status.attempted)
            stored.solved = bool(stored.solved) or bool(status.solved)
            stored.failed_attempts = status.failed_attempts or 0
            stored.last_attempt_at = status.last_attempt_at or stored.last_attempt_at
            if stored.first_solved_at is None and stored.solved:
                stored.first_solved_at = status.first_solved_at or utcnow()
            stored.updated_at = utcnow()

            await session.commit()
            return stored

    async def list_user_problem_statuses(self, user_id: int) -> list:
        async with self._session() as session:
            result = await session.execute(
                select(UserProblemStatus)
                .where(UserProblemStatus.user_id == user_id)
                .order_by(UserProblemStatus.problem_id)
            )
            return list(result.scalars().all())
