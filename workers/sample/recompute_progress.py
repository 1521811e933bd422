#!/usr/bin/env python3
"""
Sample authoritative recompute step.

Reads a writing plan and publishes today's completion percent through dayturn.
Launched by dayturn with --silent-recompute after an optimistic reset.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Tuple

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dayturn_client import publisher  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute today's progress from a writing plan.")
    parser.add_argument("--plan", default="workers/sample/plan.json")
    parser.add_argument("--silent-recompute", action="store_true", help="Launched by the reset handoff")
    return parser.parse_args()


def daily_progress(plan: Dict[str, Any]) -> Tuple[int, bool]:
    target_words = int(plan.get("target_words", 0))
    baseline_words = int(plan.get("baseline_words", 0))
    current_words = int(plan.get("current_words", baseline_words))
    days_remaining = max(1, int(plan.get("days_remaining", 1)))

    remaining = max(0, target_words - baseline_words)
    daily_target = -(-remaining // days_remaining)
    if target_words <= 0 or daily_target <= 0:
        return 0, target_words > 0
    achieved = max(0, current_words - baseline_words)
    return min(100, round(achieved * 100 / daily_target)), True


def main() -> int:
    args = parse_args()
    plan_path = Path(args.plan)
    if not plan_path.is_absolute():
        plan_path = ROOT_DIR / plan_path
    if not plan_path.exists():
        print(f"Error: plan file not found: {plan_path}")
        return 1

    try:
        plan = json.loads(plan_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        print(f"Error: invalid plan JSON in {plan_path}: {exc}")
        return 1
    if not isinstance(plan, dict):
        print("Error: invalid plan payload. Expected a JSON object.")
        return 1

    percent, has_goal = daily_progress(plan)
    saved = publisher.publish(percent, has_goal)
    print(
        "Recompute complete: "
        f"percent={percent}, has_goal={has_goal}, saved={saved}, silent={args.silent_recompute or publisher.silent}"
    )
    return 0 if saved else 1


if __name__ == "__main__":
    raise SystemExit(main())
