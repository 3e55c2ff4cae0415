"""
Remote submitter for a running cppjudge server.
Submits code over HTTP, polls for the verdict, and supports concurrent batches.
"""
import argparse
import asyncio
import time
from pathlib import Path
from typing import List, Dict, Optional

import aiohttp
from tqdm import tqdm

# Statuses that mean the judge has not finished yet
IN_PROGRESS = ("Pending", "Testing")


class RemoteSubmitter:
    def __init__(self, base_url: str = "http://localhost:8000", max_workers: int = 8,
                 poll_interval: float = 0.5, timeout: float = 300):
        """
        Args:
            base_url: judge server address
            max_workers: maximum submissions in flight during a batch
            poll_interval: seconds between status polls
            timeout: seconds to wait for one verdict before giving up
        """
        self.base_url = base_url.rstrip("/")
        self.query_url = f"{self.base_url}/api/submissions"
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.timeout = timeout

    def submit_url(self, problem_id: int) -> str:
        return f"{self.base_url}/api/problems/{problem_id}/submit"

    @staticmethod
    def _error(message: str) -> Dict:
        return {
            "success": False,
            "verdict": "Internal Error",
            "message": message,
            "time": 0,
            "memory": 0,
            "passed": False,
            "failed_test": None,
        }

    async def submit_code_async(self, session: aiohttp.ClientSession, problem_id: int, code: str,
                                language: str = "cpp", user_id: int = 1) -> Dict:
        """Submit code and wait for the final verdict."""
        data = aiohttp.FormData()
        data.add_field("user_id", str(user_id))
        data.add_field("code", code)
        data.add_field("language", language)

        try:
            async with session.post(self.submit_url(problem_id), data=data) as response:
                result = await response.json()
                submission_id = result.get("submission_id")
                if not submission_id:
                    return self._error(f"Submit rejected: {result.get('detail', result)}")
        except (aiohttp.ClientError, ValueError) as e:
            return self._error(f"Submit failed: {e}")

        start_time = time.time()
        while True:
            try:
                async with session.get(f"{self.query_url}/{submission_id}") as response:
                    result = await response.json()
            except (aiohttp.ClientError, ValueError) as e:
                return self._error(f"Query failed: {e}")

            status = result.get("status")
            elapsed = time.time() - start_time
            if status in IN_PROGRESS:
                if elapsed > self.timeout:
                    return self._error(f"Timed out waiting for submission {submission_id}")
                await asyncio.sleep(self.poll_interval)
                continue

            cases = result.get("test_results", [])
            failed_test = next(
                (i for i, case in enumerate(cases, 1) if case.get("status") != "Accepted"), None
            )
            return {
                "success": True,
                "verdict": status,
                "message": result.get("message", ""),
                "time": result.get("run_time", 0),
                "memory": result.get("memory", 0),
                "passed": status == "Accepted",
                "failed_test": failed_test,
                "case_statuses": [case.get("status") for case in cases],
                "submission_id": submission_id,
                "total_time": elapsed,
            }

    def submit_code(self, problem_id: int, code: str, language: str = "cpp", user_id: int = 1) -> Dict:
        """Blocking wrapper around submit_code_async."""
        async def _run():
            async with aiohttp.ClientSession() as session:
                return await self.submit_code_async(session, problem_id, code, language, user_id)

        return asyncio.run(_run())

    async def batch_submit_code_async(self, problem_id: int, batch_code: List[str], language: str = "cpp",
                                      user_id: int = 1) -> Dict:
        semaphore = asyncio.Semaphore(self.max_workers)
        results: List[Optional[Dict]] = [None] * len(batch_code)

        async with aiohttp.ClientSession() as session:
            with tqdm(total=len(batch_code), desc=f"Submitting {problem_id}") as pbar:
                async def one(idx: int, code: str):
                    async with semaphore:
                        results[idx] = await self.submit_code_async(session, problem_id, code, language, user_id)
                    pbar.update(1)

                await asyncio.gather(*(one(i, c) for i, c in enumerate(batch_code)))

        error_cnt = sum(1 for r in results if not r["success"])
        passed = [
            {"index": i, "code": code, "result": r}
            for i, (code, r) in enumerate(zip(batch_code, results))
            if r["success"] and r["passed"]
        ]
        valid_cnt = len(batch_code) - error_cnt
        return {
            "total": len(batch_code),
            "errors": error_cnt,
            "pass_rate": len(passed) / valid_cnt if valid_cnt else 0.0,
            "passed_submissions": passed,
            "results": results,
        }

    def batch_submit_code(self, problem_id: int, batch_code: List[str], language: str = "cpp",
                          user_id: int = 1) -> Dict:
        return asyncio.run(self.batch_submit_code_async(problem_id, batch_code, language, user_id))


def main():
    parser = argparse.ArgumentParser(description="Submit source files to a cppjudge server")
    parser.add_argument("problem_id", type=int)
    parser.add_argument("files", nargs="+", type=Path)
    parser.add_argument("--language", default="cpp")
    parser.add_argument("--user-id", type=int, default=1)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--workers", type=int, default=8)
    args = parser.parse_args()

    submitter = RemoteSubmitter(base_url=args.base_url, max_workers=args.workers)
    codes = [f.read_text(encoding="utf-8") for f in args.files]
    batch = submitter.batch_submit_code(args.problem_id, codes, args.language, args.user_id)

    for path, result in zip(args.files, batch["results"]):
        print(f"{path}: {result['verdict']} ({result['time']}ms, {result['memory']}KB)")
        if result.get("failed_test"):
            print(f"  first failing test: {result['failed_test']}")
    print(f"Pass rate: {batch['pass_rate']:.2%} ({batch['errors']} errors)")


if __name__ == "__main__":
    main()
