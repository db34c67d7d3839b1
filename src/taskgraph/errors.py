"""Typed errors raised by the task graph engine.

Every error carries a stable ``code`` so callers (the CLI, batch runners)
can report it as data. Single commands raise; batch operations catch
``TaskGraphError`` per item and hand it back as a value on
``tasks.BatchItem``, so a batch keeps going and the caller inspects each
outcome. Anything else is a bug and propagates.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TASK_NOT_RUNNABLE = "TASK_NOT_RUNNABLE"
    TASK_ALREADY_CLAIMED = "TASK_ALREADY_CLAIMED"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    STORE_FAILED = "STORE_FAILED"
    CONFIG_ERROR = "CONFIG_ERROR"
    RECONCILE_FAILED = "RECONCILE_FAILED"


class TaskGraphError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        payload: dict = {"code": str(self.code), "error": self.message}
        if self.cause is not None:
            payload["cause"] = str(self.cause)
        return payload


class TaskNotFound(TaskGraphError):
    code = ErrorCode.TASK_NOT_FOUND

    def __init__(self, task_id: str):
        super().__init__(f"Task '{task_id}' not found.")
        self.task_id = task_id


class PlanNotFound(TaskGraphError):
    code = ErrorCode.PLAN_NOT_FOUND

    def __init__(self, plan_ref: str):
        super().__init__(f"Plan '{plan_ref}' not found.")
        self.plan_ref = plan_ref


class InvalidTransition(TaskGraphError):
    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, current: str, next_status: str, message: str | None = None):
        super().__init__(
            message or f"Invalid task status transition from '{current}' to '{next_status}'."
        )
        self.current = current
        self.next_status = next_status


class TaskNotRunnable(TaskGraphError):
    code = ErrorCode.TASK_NOT_RUNNABLE

    def __init__(self, task_id: str, unmet_blockers: int):
        super().__init__(
            f"Task '{task_id}' has {unmet_blockers} unmet blocker(s) and is not runnable."
        )
        self.task_id = task_id
        self.unmet_blockers = unmet_blockers


class TaskAlreadyClaimed(TaskGraphError):
    code = ErrorCode.TASK_ALREADY_CLAIMED

    def __init__(self, task_id: str, claimant: str):
        super().__init__(
            f"Task '{task_id}' is being worked by {claimant}. Use --force to override."
        )
        self.task_id = task_id
        self.claimant = claimant


class CycleDetected(TaskGraphError):
    code = ErrorCode.CYCLE_DETECTED

    def __init__(self, from_task_id: str, to_task_id: str):
        super().__init__(
            f"Blocking edge from {from_task_id} to {to_task_id} would create a cycle."
        )
        self.from_task_id = from_task_id
        self.to_task_id = to_task_id


class ValidationFailed(TaskGraphError):
    code = ErrorCode.VALIDATION_FAILED


class StoreFailed(TaskGraphError):
    """Opaque failure in the persistence layer."""

    code = ErrorCode.STORE_FAILED


class ConfigError(TaskGraphError):
    code = ErrorCode.CONFIG_ERROR


class ReconcileFailed(TaskGraphError):
    """A plan reconciliation stopped partway; ``stable_key`` scopes the retry."""

    code = ErrorCode.RECONCILE_FAILED

    def __init__(self, stable_key: str, cause: BaseException):
        super().__init__(
            f"Reconciliation failed at task '{stable_key}': {cause}", cause=cause
        )
        self.stable_key = stable_key
