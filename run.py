#!/usr/bin/env python3
"""
Birthday Notifier - launcher (FastAPI + SQLite + scheduler)

Usage:
  python run.py                  # API server at http://127.0.0.1:8000
  python run.py --scheduler      # scheduler only
  python run.py --both           # server + scheduler
  python run.py --host 0.0.0.0 --port 8000 --no-reload
"""

from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent


def run(cmd: list[str], *, check: bool = True) -> int:
    print("\n> " + " ".join(cmd))
    return subprocess.run(cmd, cwd=str(PROJECT_ROOT), check=check).returncode


def scheduler_cmd() -> list[str]:
    return [sys.executable, "-m", "birthday_app.jobs.schedule_runner"]


def start_scheduler() -> subprocess.Popen:
    print("Starting birthday scheduler in background...")
    return subprocess.Popen(scheduler_cmd(), cwd=str(PROJECT_ROOT))


def start_server(host: str, port: int, reload: bool) -> int:
    cmd = [sys.executable, "-m", "uvicorn", "birthday_app.main:app", "--host", host, "--port", str(port)]
    if reload:
        cmd.append("--reload")
    print(f"\nStarting server: http://{host if host != '0.0.0.0' else '127.0.0.1'}:{port}")
    print("Press Ctrl+C to stop.\n")
    return run(cmd, check=False)


def main() -> int:
    parser = argparse.ArgumentParser(prog="Birthday Notifier Launcher")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--scheduler", action="store_true", help="Run only the scheduler")
    mode.add_argument("--both", action="store_true", help="Run server + scheduler")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Server port (default: 8000)")
    parser.add_argument("--no-reload", action="store_true", help="Disable uvicorn --reload")
    args = parser.parse_args()

    if args.scheduler:
        print("Running birthday scheduler (Ctrl+C to stop)...\n")
        return run(scheduler_cmd(), check=False)

    sched_proc: subprocess.Popen | None = None
    if args.both:
        sched_proc = start_scheduler()

    try:
        return start_server(args.host, args.port, not args.no_reload)
    finally:
        if sched_proc is not None and sched_proc.poll() is None:
            print("\nStopping scheduler...")
            sched_proc.terminate()
            try:
                sched_proc.wait(timeout=30)
            except subprocess.TimeoutExpired:
                sched_proc.kill()


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nStopped.")
        raise
