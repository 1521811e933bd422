#!/usr/bin/env python3
"""
Recompute-facing client for publishing authoritative daily progress back to dayturn.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Optional

import dayturn


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text if text else None


def _parse_day(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


@dataclass
class RecomputeContext:
    silent: bool
    day_stamp: Optional[date]
    cause: Optional[str]
    config_path: Optional[str]
    state_dir: Optional[str]

    @staticmethod
    def from_env() -> "RecomputeContext":
        return RecomputeContext(
            silent=_non_empty(os.getenv(dayturn.ENV_SILENT_RECOMPUTE)) == "1",
            day_stamp=_parse_day(_non_empty(os.getenv(dayturn.ENV_DAY_STAMP))),
            cause=_non_empty(os.getenv(dayturn.ENV_CAUSE)),
            config_path=_non_empty(os.getenv(dayturn.ENV_CONFIG)),
            state_dir=_non_empty(os.getenv(dayturn.ENV_STATE_DIR)),
        )


class ProgressPublisher:
    def __init__(self, config_path: Optional[str] = None, state_dir: Optional[str] = None) -> None:
        env = RecomputeContext.from_env()
        self.context = env
        self.config_path = _non_empty(config_path) or env.config_path
        self.state_dir = _non_empty(state_dir) or env.state_dir

    @property
    def silent(self) -> bool:
        return self.context.silent

    def settings(self) -> dayturn.Settings:
        if self.config_path:
            return dayturn.load_settings(Path(self.config_path), required=True)
        base_dir = Path.cwd()
        state_dir = Path(self.state_dir).resolve() if self.state_dir else None
        return dayturn.Settings.default(base_dir, state_dir)

    def publish(self, percent: Any, has_goal: bool) -> bool:
        """Write the computed value; dropped when it was issued for a day that has since rolled over."""
        try:
            service = dayturn.build_service(self.settings())
        except dayturn.DayturnError as exc:
            dayturn.logger.error("Cannot publish daily progress: %s", str(exc))
            return False
        return service.set_daily_progress(percent, has_goal, issued_for=self.context.day_stamp)


publisher = ProgressPublisher()
