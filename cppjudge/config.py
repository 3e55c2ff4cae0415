import logging
import os
import sys
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("CPPJUDGE_DATA_DIR", str(BASE_DIR / "data")))

# Language toolchains. "{source}" and "{binary}" are substituted with paths
# inside the per-run working directory.
GPP = os.getenv("CPPJUDGE_GPP", "g++")
GCC = os.getenv("CPPJUDGE_GCC", "gcc")

LANGUAGES = {
    "cpp": {
        "source": "main.cpp",
        "binary": "main",
        "compile": [GPP, "-O2", "-std=c++17", "-DONLINE_JUDGE", "{source}", "-o", "{binary}"],
        "run": ["{binary}"],
    },
    "c": {
        "source": "main.c",
        "binary": "main",
        "compile": [GCC, "-O2", "-std=c17", "-DONLINE_JUDGE", "{source}", "-o", "{binary}", "-lm"],
        "run": ["{binary}"],
    },
    "python": {
        "source": "main.py",
        "compile": [sys.executable, "-m", "py_compile", "{source}"],
        "run": [sys.executable, "{source}"],
    },
}
DEFAULT_LANGUAGE = "cpp"

# Judge settings
MAX_CONCURRENT_JUDGES = int(os.getenv("CPPJUDGE_MAX_CONCURRENT_JUDGES", "4"))
MAX_QUEUE_SIZE = int(os.getenv("CPPJUDGE_MAX_QUEUE_SIZE", "256"))
DEFAULT_TIME_LIMIT = 1000  # ms
DEFAULT_MEMORY_LIMIT = 262144  # KB
COMPILE_TIMEOUT = 30  # s
MAX_OUTPUT_SIZE = 10 * 1024 * 1024
MEMORY_SAMPLE_INTERVAL = 0.005  # s
ENFORCE_MEMORY_LIMIT = os.getenv("CPPJUDGE_ENFORCE_MEMORY_LIMIT", "1") == "1"

# Database
DATABASE_URL = os.getenv("CPPJUDGE_DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR}/cppjudge.db")

LOG_LEVEL = os.getenv("CPPJUDGE_LOG_LEVEL", "INFO")


def setup_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
