from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from datetime import datetime, timezone
import enum

from cppjudge.config import DATABASE_URL, DATA_DIR, DEFAULT_TIME_LIMIT, DEFAULT_MEMORY_LIMIT

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JudgeStatus(str, enum.Enum):
    PENDING = "Pending"
    TESTING = "Testing"
    ACCEPTED = "Accepted"
    FAILED = "Failed"
    WRONG_ANSWER = "Wrong Answer"
    TIME_LIMIT = "Time Limit Exceeded"
    RUNTIME_ERROR = "Runtime Error"
    COMPILE_ERROR = "Compilation Error"
    INTERNAL_ERROR = "Internal Error"


class Problem(Base):
    __tablename__ = "problems"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(256), default="")
    description = Column(Text, default="")
    difficulty = Column(String(16), default="Easy")
    time_limit = Column(Integer, default=DEFAULT_TIME_LIMIT)  # ms
    memory_limit = Column(Integer, default=DEFAULT_MEMORY_LIMIT)  # KB
    created_at = Column(DateTime, default=utcnow)


class TestCase(Base):
    __tablename__ = "test_cases"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id", ondelete="CASCADE"), nullable=False, index=True)
    input = Column(Text, default="")
    output = Column(Text, default="")
    is_example = Column(Boolean, default=False)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    problem_id = Column(Integer, nullable=False, index=True)
    language = Column(String(16), nullable=False)
    code = Column(Text, nullable=False)
    status = Column(String(32), default=JudgeStatus.PENDING.value)
    run_time = Column(Integer, default=0)  # ms
    memory = Column(Integer, default=0)  # KB
    message = Column(Text, default="")
    created_at = Column(DateTime, default=utcnow)
    submitted_at = Column(DateTime, default=utcnow)


class TestResult(Base):
    __tablename__ = "test_results"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(Integer, ForeignKey("submissions.id"), nullable=False, index=True)
    test_case_id = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    output = Column(Text, default="")
    error_output = Column(Text, default="")
    run_time = Column(Integer, default=0)  # ms
    memory = Column(Integer, default=0)  # KB
    created_at = Column(DateTime, default=utcnow)


class UserProblemStatus(Base):
    __tablename__ = "user_problem_status"
    __table_args__ = (UniqueConstraint("user_id", "problem_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    problem_id = Column(Integer, nullable=False)
    attempted = Column(Boolean, default=False)
    solved = Column(Boolean, default=False)
    failed_attempts = Column(Integer, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    first_solved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


def make_session_factory(url: str = DATABASE_URL):
    engine = create_async_engine(url, echo=False)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine, async_session = make_session_factory()


async def init_db(db_engine=None):
    if db_engine is None or db_engine is engine:
        db_engine = engine
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
