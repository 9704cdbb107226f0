"""Deterministic local worker for launcher and retry-loop integration tests.

Usage as a command template::

    python -m agent_cluster.orchestrator.launcher.demo_worker --prompt-file {prompt_file}

The scenario comes from ``--case`` or ``AGENT_CLUSTER_DEMO_CASE``.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

CASE_ENV = "AGENT_CLUSTER_DEMO_CASE"
CASES = (
    "success",
    "fail_not_found",
    "mismatch",
    "technical",
    "unknown",
    "fail_then_succeed",
    "sleep",
)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument("--prompt", required=False)
    parser.add_argument("--case", choices=CASES, default=None)
    parser.add_argument("--task-id", default=os.getenv("AGENT_CLUSTER_TASK_ID", "demo"))
    parser.add_argument("--seconds", type=float, default=30.0)
    args, _ = parser.parse_known_args(argv)

    case = (args.case or os.getenv(CASE_ENV, "success")).strip().lower()
    prompt = _read_prompt(args.prompt_file, args.prompt)
    state_dir = Path(args.prompt_file).parent if args.prompt_file else Path.cwd()
    print(f"demo worker: task={args.task_id} case={case}", flush=True)
    print(f"prompt: {len(prompt)} chars", flush=True)
    return _dispatch_case(
        case=case,
        task_id=args.task_id,
        state_dir=state_dir,
        seconds=args.seconds,
    )


def _dispatch_case(  # noqa: PLR0911
    *,
    case: str,
    task_id: str,
    state_dir: Path,
    seconds: float,
) -> int:
    if case == "fail_not_found":
        print("Error: required module context not found", flush=True)
        return 1

    if case == "mismatch":
        print("Result mismatch: implementation went in the wrong direction", flush=True)
        return 1

    if case == "technical":
        print("Build failed with a type error", flush=True)
        return 1

    if case == "unknown":
        print("Worker gave up", flush=True)
        return 3

    if case == "fail_then_succeed":
        state = _load_state(state_dir, task_id)
        attempt = int(state.get("attempt", 0)) + 1
        state["attempt"] = attempt
        _save_state(state_dir, task_id, state)
        if attempt == 1:
            print("Error: target file not found", flush=True)
            return 1
        print(f"Done on attempt {attempt}", flush=True)
        return 0

    if case == "sleep":
        time.sleep(seconds)
        return 0

    print("Done", flush=True)
    return 0


def _read_prompt(prompt_file: str | None, prompt: str | None) -> str:
    if prompt_file:
        return Path(prompt_file).read_text("utf-8")
    return prompt or ""


def _state_path(state_dir: Path, task_id: str) -> Path:
    return state_dir / f"demo_state_{task_id}.json"


def _load_state(state_dir: Path, task_id: str) -> dict[str, object]:
    path = _state_path(state_dir, task_id)
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _save_state(state_dir: Path, task_id: str, payload: dict[str, object]) -> None:
    _state_path(state_dir, task_id).write_text(json.dumps(payload, sort_keys=True), "utf-8")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
