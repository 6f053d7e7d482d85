"""
Base task class — Abstract interface for the automation procedures.
Wraps each run with timing, structured results and error recording.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from ..config import AutomationConfig

logger = logging.getLogger("m365_tenant_automation.tasks")


class TaskResult:
    """Standardized result from a task run."""

    def __init__(self, task_name: str):
        self.task_name = task_name
        self.data: dict[str, Any] = {}
        self.metadata: dict[str, Any] = {
            "task": task_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "changes": 0,
            "errors": [],
            "warnings": [],
        }

    @property
    def succeeded(self) -> bool:
        return not self.metadata["errors"]

    def add_data(self, key: str, value: Any):
        self.data[key] = value

    def count_change(self, n: int = 1):
        self.metadata["changes"] += n

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.error(f"[{self.task_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.task_name}] {warning}")

    def to_dict(self) -> dict:
        return {
            "data": self.data,
            "metadata": self.metadata,
        }


class BaseTask(ABC):
    """
    Abstract base class for all tasks.

    Subclasses implement run() against the services they are given.
    execute() records timing and turns an escaping exception into a task
    error, so a failed run still produces a result and audit summary.
    """

    name: str = "base"
    description: str = "Base task"

    def __init__(self, config: AutomationConfig):
        self.config = config

    def execute(self) -> TaskResult:
        result = TaskResult(self.name)
        result.metadata["started_at"] = time.time()
        logger.info(f"[{self.name}] Starting...")

        try:
            self.run(result)
        except Exception as e:
            result.add_error(f"{type(e).__name__}: {e}")
            logger.debug(f"[{self.name}] Aborted", exc_info=True)

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        logger.info(
            f"[{self.name}] Completed in {result.metadata['duration_seconds']}s — "
            f"{result.metadata['changes']} changes, "
            f"{len(result.metadata['errors'])} errors"
        )
        return result

    @abstractmethod
    def run(self, result: TaskResult):
        """
        Implement the procedure.
        Record outputs via result.add_data(key, value).
        """
        raise NotImplementedError
