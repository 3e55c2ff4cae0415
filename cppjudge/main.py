import io
import logging
import os
import zipfile
from typing import Optional

from fastapi import FastAPI, APIRouter, UploadFile, File, Form, HTTPException, Request
from fastapi.responses import JSONResponse

from cppjudge.config import LANGUAGES, DEFAULT_LANGUAGE, DEFAULT_TIME_LIMIT, DEFAULT_MEMORY_LIMIT, setup_logging
from cppjudge.dispatcher import Dispatcher
from cppjudge.errors import NotFound, DispatcherBusy, DispatcherClosed
from cppjudge.judge import Judge
from cppjudge.models import init_db, Problem, TestCase, Submission
from cppjudge.sandbox import Sandbox
from cppjudge.store import Store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _iso(value):
    return value.isoformat() if value else None


def _problem_dict(p: Problem) -> dict:
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "difficulty": p.difficulty,
        "time_limit": p.time_limit,
        "memory_limit": p.memory_limit,
        "created_at": _iso(p.created_at),
    }


def _submission_dict(s: Submission, with_code: bool = False) -> dict:
    data = {
        "id": s.id,
        "user_id": s.user_id,
        "problem_id": s.problem_id,
        "language": s.language,
        "status": s.status,
        "run_time": s.run_time,
        "memory": s.memory,
        "message": s.message,
        "created_at": _iso(s.created_at),
        "submitted_at": _iso(s.submitted_at),
    }
    if with_code:
        data["code"] = s.code
    return data


def _sort_key(name: str):
    stem = os.path.splitext(name)[0]
    return (0, int(stem), "") if stem.isdigit() else (1, 0, stem)


async def _read_testcases_zip(upload: UploadFile, example_count: int = 0) -> list:
    """Turn a zip of N.in / N.out pairs into test cases ordered by N."""
    data = await upload.read()
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            files = {}
            for name in zf.namelist():
                basename = os.path.basename(name)
                if basename.endswith(".in") or basename.endswith(".out"):
                    files[basename] = zf.read(name).decode("utf-8", errors="replace")
    except zipfile.BadZipFile as e:
        raise HTTPException(400, f"Failed to extract test cases: {e}")

    inputs = sorted((n for n in files if n.endswith(".in")), key=_sort_key)
    cases = []
    for name in inputs:
        output_name = name[:-3] + ".out"
        if output_name not in files:
            continue
        cases.append(TestCase(
            input=files[name],
            output=files[output_name],
            is_example=len(cases) < example_count,
        ))
    if not cases:
        raise HTTPException(400, "No matching .in/.out pairs in test case archive")
    return cases


# ===== Problem APIs =====

@router.post("/problems")
async def create_problem(
    request: Request,
    title: str = Form(""),
    description: str = Form(""),
    difficulty: str = Form("Easy"),
    time_limit: int = Form(DEFAULT_TIME_LIMIT),
    memory_limit: int = Form(DEFAULT_MEMORY_LIMIT),
    example_count: int = Form(0),
    testcases: UploadFile = File(...),
):
    """Upload a problem with a zip of test cases"""
    store: Store = request.app.state.store
    cases = await _read_testcases_zip(testcases, example_count)
    problem = await store.add_problem(
        Problem(title=title, description=description, difficulty=difficulty,
                time_limit=time_limit, memory_limit=memory_limit),
        cases,
    )
    return {"success": True, "problem_id": problem.id, "test_case_count": len(cases)}


@router.get("/problems")
async def list_problems(request: Request):
    problems = await request.app.state.store.list_problems()
    return [_problem_dict(p) for p in problems]


@router.get("/problems/{problem_id}")
async def get_problem(problem_id: int, request: Request):
    """Problem details with its example test cases"""
    store: Store = request.app.state.store
    problem = await store.get_problem(problem_id)
    examples = await store.get_test_cases(problem_id, examples_only=True)
    data = _problem_dict(problem)
    data["examples"] = [{"id": tc.id, "input": tc.input, "output": tc.output} for tc in examples]
    return data


@router.patch("/problems/{problem_id}")
async def update_problem(
    problem_id: int,
    request: Request,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    time_limit: Optional[int] = Form(None),
    memory_limit: Optional[int] = Form(None),
    example_count: int = Form(0),
    testcases: Optional[UploadFile] = File(None),
):
    """Update problem settings and optionally replace its test cases"""
    store: Store = request.app.state.store
    problem = await store.update_problem(
        problem_id, title=title, description=description,
        time_limit=time_limit, memory_limit=memory_limit,
    )
    if testcases:
        await store.replace_test_cases(problem_id, await _read_testcases_zip(testcases, example_count))
    data = _problem_dict(problem)
    data["test_case_count"] = len(await store.get_test_cases(problem_id))
    return data


@router.delete("/problems/{problem_id}")
async def delete_problem(problem_id: int, request: Request):
    await request.app.state.store.delete_problem(problem_id)
    return {"success": True}


# ===== Submission APIs =====

@router.post("/problems/{problem_id}/submit")
async def submit(
    problem_id: int,
    request: Request,
    user_id: int = Form(...),
    code: str = Form(...),
    language: str = Form(DEFAULT_LANGUAGE),
):
    """Submit code for judging"""
    store: Store = request.app.state.store
    sandbox: Sandbox = request.app.state.sandbox
    dispatcher: Dispatcher = request.app.state.dispatcher

    if not code.strip():
        raise HTTPException(400, "Code is required")
    if not sandbox.supports(language):
        raise HTTPException(400, f"Unsupported language. Available: {list(sandbox.languages.keys())}")

    submission = await store.add_submission(
        Submission(user_id=user_id, problem_id=problem_id, code=code, language=language)
    )
    dispatcher.submit(submission.id)

    return JSONResponse(status_code=202, content={"submission_id": submission.id, "status": submission.status})


@router.get("/submissions/{submission_id}")
async def get_submission(submission_id: int, request: Request):
    """Submission status with its per-test-case results"""
    store: Store = request.app.state.store
    submission = await store.get_submission(submission_id)
    results = await store.get_test_results(submission_id)
    data = _submission_dict(submission, with_code=True)
    data["test_results"] = [
        {
            "id": r.id,
            "test_case_id": r.test_case_id,
            "status": r.status,
            "output": r.output,
            "error_output": r.error_output,
            "run_time": r.run_time,
            "memory": r.memory,
        }
        for r in results
    ]
    return data


@router.get("/submissions")
async def list_submissions(
    request: Request,
    problem_id: Optional[int] = None,
    user_id: Optional[int] = None,
    limit: int = 50,
):
    """List recent submissions"""
    submissions = await request.app.state.store.list_submissions(problem_id=problem_id, user_id=user_id, limit=limit)
    return [_submission_dict(s) for s in submissions]


@router.get("/users/{user_id}/problems/status")
async def user_problem_statuses(user_id: int, request: Request):
    statuses = await request.app.state.store.list_user_problem_statuses(user_id)
    return [
        {
            "problem_id": s.problem_id,
            "attempted": s.attempted,
            "solved": s.solved,
            "failed_attempts": s.failed_attempts,
            "last_attempt_at": _iso(s.last_attempt_at),
            "first_solved_at": _iso(s.first_solved_at),
        }
        for s in statuses
    ]


# ===== Config APIs =====

@router.get("/languages")
async def get_languages(request: Request):
    """Available languages and their compile commands"""
    return {
        lang: {"compiled": bool(cfg.get("compile")), "compile": cfg.get("compile", [])}
        for lang, cfg in request.app.state.sandbox.languages.items()
    }


@router.get("/judge/status")
async def judge_status(request: Request):
    dispatcher: Dispatcher = request.app.state.dispatcher
    return {
        "running": dispatcher.is_running,
        "workers": dispatcher.workers,
        "pending": dispatcher.pending,
        "in_flight": dispatcher.in_flight,
        "completed": dispatcher.completed,
        "failed": dispatcher.failed,
    }


def create_app(store: Optional[Store] = None, sandbox: Optional[Sandbox] = None,
               db_engine=None, dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    app = FastAPI(title="cppjudge")
    app.state.store = store or Store()
    app.state.sandbox = sandbox or Sandbox(LANGUAGES)
    app.state.dispatcher = dispatcher or Dispatcher(Judge(app.state.store, app.state.sandbox))
    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        await init_db(db_engine)
        await app.state.dispatcher.start()
        logger.info("Judge service ready, languages: %s", ", ".join(app.state.sandbox.languages))

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.dispatcher.shutdown()

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DispatcherBusy)
    async def busy_handler(request: Request, exc: DispatcherBusy):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(DispatcherClosed)
    async def closed_handler(request: Request, exc: DispatcherClosed):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
