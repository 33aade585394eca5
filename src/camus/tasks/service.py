"""Task lifecycle operations behind the `/api/task` routes.

Every status change goes through `camus.tasks.status` and is written with a
compare-and-set on the status the decision was based on, so two request
handlers racing on one task cannot both win a transition.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict

from camus.backend.client import REPORT_CATEGORY, TaskBackend, module_category
from camus.errors import (
    InvalidTransition,
    NotFoundError,
    UnauthenticatedError,
    UpstreamError,
    ValidationError,
)
from camus.storage.base import StatusConflict, TaskStorage
from camus.storage.models import TaskRecord
from camus.tasks.status import (
    TaskEvent,
    TaskStatus,
    Trigger,
    is_terminal,
    next_status,
    resolve_requested_status,
)

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = ("title", "params", "status", "stages")
STAGE_COMPLETED = "completed"
WORKER_FAILED = "failed"


class CallbackPayload(BaseModel):
    """Result notification posted by the backend for one of its jobs."""

    model_config = ConfigDict(extra="allow")

    task_id: str | int
    status: str
    category: str | None = None


class TaskService:
    def __init__(self, *, storage: TaskStorage, backend: TaskBackend) -> None:
        self.storage = storage
        self.backend = backend

    def create_task(
        self,
        *,
        topic: str | None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> TaskRecord:
        if not topic or not topic.strip():
            raise ValidationError("Topic is required")
        task = self.storage.create_task(
            title="",
            params={"topic": topic},
            user_id=user_id,
            session_id=session_id,
        )
        logger.info(
            "task_create event=created task_id=%s user_id=%s session_id=%s",
            task.id,
            user_id,
            session_id,
        )
        return task

    def get_task(self, task_id: str) -> TaskRecord:
        task = self.storage.get_task(task_id)
        if task is None:
            raise NotFoundError("Task not found", details={"task_id": task_id})
        return task

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> list[TaskRecord]:
        if not user_id and not session_id:
            raise UnauthenticatedError("User ID or session ID is required")
        return self.storage.list_tasks(user_id=user_id, session_id=session_id)

    def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord:
        """Apply a client PATCH. `fields` holds only keys the client sent."""
        changes = {key: fields[key] for key in PATCHABLE_FIELDS if key in fields}
        if not changes:
            raise ValidationError("No fields to update")

        current = self.get_task(task_id)
        if "status" in changes:
            requested = resolve_requested_status(
                current.status,
                str(changes.pop("status")),
                trigger=Trigger.CLIENT,
            )
            if requested is not None:
                changes["status"] = requested

        locked_fields = {"params", "stages"} & set(changes)
        editable = current.status in (TaskStatus.PENDING, TaskStatus.STAGE)
        if locked_fields and not editable:
            logger.warning(
                "task_update event=rejected task_id=%s status=%s fields=%s",
                task_id,
                current.status.value,
                sorted(locked_fields),
            )
            raise InvalidTransition(
                current.status.value,
                current.status.value,
                message=f"Task is {current.status.value}; params and stages are read-only",
            )
        if not changes:
            return current

        try:
            updated = self.storage.update_task(task_id, changes, expected_status=current.status)
        except KeyError as exc:
            raise NotFoundError("Task not found", details={"task_id": task_id}) from exc
        except StatusConflict as exc:
            raise InvalidTransition(
                exc.expected.value,
                exc.actual.value,
                message="Task status changed concurrently",
            ) from exc
        logger.info(
            "task_update event=updated task_id=%s fields=%s status=%s",
            task_id,
            sorted(changes),
            updated.status.value,
        )
        return updated

    def start_progress(
        self,
        task_id: str,
        *,
        user_id: str | None,
        session_id: str | None = None,
    ) -> TaskRecord:
        """STAGE -> IN_PROGRESS plus one backend job per plan stage.

        The transition is claimed first; if dispatch then fails the task is
        moved to FAILED so it never sits in IN_PROGRESS with no work running,
        and the dispatch error is re-raised as UpstreamError.
        """
        task = self.get_task(task_id)
        self._check_owner(task, user_id=user_id, session_id=session_id)
        target = next_status(task.status, TaskEvent.START_PROGRESS, trigger=Trigger.SERVER)

        plan = copy.deepcopy(task.stages) if task.stages else None
        if not plan or not isinstance(plan.get("stages"), list) or not plan["stages"]:
            raise ValidationError("Task has no stages")

        try:
            self.storage.update_task(
                task_id,
                {"status": target},
                expected_status=TaskStatus.STAGE,
            )
        except StatusConflict as exc:
            raise InvalidTransition(
                exc.expected.value,
                exc.actual.value,
                message="Task status changed concurrently",
            ) from exc
        logger.info("task_update event=start_progress task_id=%s status=%s", task_id, target.value)

        for index, stage in enumerate(plan["stages"]):
            try:
                backend_task_id = self.backend.create_task(
                    user_id=user_id,
                    task_id=task_id,
                    params=_stage_params(stage.get("input")),
                    category=module_category(str(stage.get("module", ""))),
                    name=task.title or "",
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "task_update event=dispatch_failed task_id=%s stage=%d reason=%s",
                    task_id,
                    index,
                    exc,
                )
                self._fail(task_id, str(exc), trigger=Trigger.SERVER)
                raise UpstreamError(
                    "Failed to dispatch task stages",
                    details={"task_id": task_id, "reason": str(exc)},
                ) from exc
            try:
                self._record_dispatch(task_id, index, str(backend_task_id))
            except StatusConflict:
                logger.warning(
                    "task_update event=dispatch_stopped task_id=%s stage=%d reason=status_changed",
                    task_id,
                    index,
                )
                break
        return self.get_task(task_id)

    def _record_dispatch(self, task_id: str, index: int, backend_task_id: str) -> TaskRecord:
        """Store one stage's backend id right after it is dispatched.

        Callbacks that arrived before the id was stored are parked in
        `metadata.early_callbacks` and applied here.
        """
        task = self.get_task(task_id)
        plan = copy.deepcopy(task.stages or {})
        stage = plan["stages"][index]
        stage["task_id"] = backend_task_id

        changes: dict[str, Any] = {"stages": plan}
        metadata = dict(task.metadata or {})
        early = dict(metadata.get("early_callbacks") or {})
        if backend_task_id in early:
            stage["status"] = early.pop(backend_task_id)
            metadata["early_callbacks"] = early
            changes["metadata"] = metadata
        if self._dispatch_report_when_done(task, plan, metadata):
            changes["metadata"] = metadata
        return self.storage.update_task(
            task_id,
            changes,
            expected_status=TaskStatus.IN_PROGRESS,
        )

    def handle_callback(self, task_id: str, payload: CallbackPayload) -> bool:
        """Apply one backend notification. Returns the `success` flag."""
        task = self.get_task(task_id)
        backend_task_id = str(payload.task_id)
        logger.info(
            "task_callback event=received task_id=%s backend_task_id=%s status=%s category=%s",
            task_id,
            backend_task_id,
            payload.status,
            payload.category,
        )

        if is_terminal(task.status):
            logger.warning(
                "task_callback event=ignored reason=terminal task_id=%s status=%s",
                task_id,
                task.status.value,
            )
            return task.status == TaskStatus.COMPLETED
        if task.status == TaskStatus.STAGE and payload.status == WORKER_FAILED:
            self._fail(
                task_id,
                f"[{payload.category}] task[{task_id}] failed",
                trigger=Trigger.CALLBACK,
            )
            return False
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransition(
                task.status.value,
                payload.status,
                message="Task is not in progress",
            )
        if not task.stages:
            self._fail(task_id, "Task has no stages", trigger=Trigger.CALLBACK)
            return False

        if payload.status == WORKER_FAILED:
            self._fail(
                task_id,
                f"[{payload.category}] task[{task_id}] failed",
                trigger=Trigger.CALLBACK,
            )
            return False

        try:
            if payload.category == REPORT_CATEGORY:
                self._complete(task, backend_task_id, payload.status)
            else:
                self._advance_stage(task, backend_task_id, payload.status)
        except StatusConflict:
            logger.warning("task_callback event=ignored reason=status_changed task_id=%s", task_id)
            return self.get_task(task_id).status == TaskStatus.COMPLETED
        except Exception as exc:  # noqa: BLE001
            logger.error("task_callback event=failed task_id=%s reason=%s", task_id, exc)
            self._fail(task_id, str(exc), trigger=Trigger.CALLBACK)
            return False
        return True

    def _complete(self, task: TaskRecord, backend_task_id: str, status: str) -> None:
        target = next_status(task.status, TaskEvent.WORKER_COMPLETED, trigger=Trigger.CALLBACK)
        detail = self.backend.get_task_detail(backend_task_id)
        outer = detail.get("results")
        inner = outer.get("results") if isinstance(outer, dict) else None
        if not isinstance(inner, dict):
            raise UpstreamError("Backend task detail has no results")
        self.storage.update_task(
            task.id,
            {"results": {**inner, "status": status}, "status": target},
            expected_status=TaskStatus.IN_PROGRESS,
        )
        logger.info("task_callback event=completed task_id=%s", task.id)

    def _advance_stage(self, task: TaskRecord, backend_task_id: str, status: str) -> None:
        plan = copy.deepcopy(task.stages or {})
        stages = plan.get("stages") or []
        stage = next(
            (item for item in stages if str(item.get("task_id")) == backend_task_id),
            None,
        )
        metadata = dict(task.metadata or {})
        if stage is None:
            if any(not item.get("task_id") for item in stages):
                # Stages are still being dispatched; keep the status for later.
                early = dict(metadata.get("early_callbacks") or {})
                early[backend_task_id] = status
                metadata["early_callbacks"] = early
                self.storage.update_task(
                    task.id,
                    {"metadata": metadata},
                    expected_status=TaskStatus.IN_PROGRESS,
                )
                logger.info(
                    "task_callback event=deferred task_id=%s backend_task_id=%s",
                    task.id,
                    backend_task_id,
                )
                return
            raise LookupError("Stage not found")
        stage["status"] = status

        changes: dict[str, Any] = {"stages": plan}
        if self._dispatch_report_when_done(task, plan, metadata):
            changes["metadata"] = metadata
        self.storage.update_task(task.id, changes, expected_status=TaskStatus.IN_PROGRESS)

    def _dispatch_report_when_done(
        self,
        task: TaskRecord,
        plan: dict[str, Any],
        metadata: dict[str, Any],
    ) -> bool:
        """Start the report job once every stage is completed. Mutates `metadata`."""
        stages = plan.get("stages") or []
        all_completed = bool(stages) and all(
            item.get("status") == STAGE_COMPLETED for item in stages
        )
        if not all_completed or metadata.get("report_task_id"):
            return False
        metadata["report_task_id"] = self.backend.create_task(
            user_id=task.user_id,
            task_id=task.id,
            params={"plan": plan},
            category=REPORT_CATEGORY,
            name=task.title or "",
        )
        logger.info(
            "task_callback event=report_dispatched task_id=%s report_task_id=%s",
            task.id,
            metadata["report_task_id"],
        )
        return True

    def _fail(self, task_id: str, reason: str, *, trigger: Trigger) -> TaskRecord:
        task = self.get_task(task_id)
        if is_terminal(task.status):
            return task
        target = next_status(task.status, TaskEvent.WORKER_FAILED, trigger=trigger)
        metadata = {**(task.metadata or {}), "error": reason}
        try:
            updated = self.storage.update_task(
                task_id,
                {"status": target, "metadata": metadata},
                expected_status=task.status,
            )
        except StatusConflict:
            logger.warning(
                "task_update event=fail_skipped task_id=%s reason=status_changed", task_id
            )
            return self.get_task(task_id)
        logger.warning("task_update event=failed task_id=%s reason=%s", task_id, reason)
        return updated

    @staticmethod
    def _check_owner(task: TaskRecord, *, user_id: str | None, session_id: str | None) -> None:
        if not user_id and not session_id:
            raise UnauthenticatedError("Authentication required to start a task")
        if task.user_id is None and task.session_id is None:
            return
        owns = (user_id is not None and task.user_id == user_id) or (
            session_id is not None and task.session_id == session_id
        )
        if not owns:
            raise UnauthenticatedError("Task does not belong to the caller")


def _stage_params(stage_input: Any) -> dict[str, Any]:
    if isinstance(stage_input, dict):
        return dict(stage_input)
    if stage_input is None:
        return {}
    return {"input": stage_input}
