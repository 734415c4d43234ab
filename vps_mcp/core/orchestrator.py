"""Deployment task orchestration.

A task moves ``pending -> running -> completed | failed``, or from running to
``cancelled``. Failed and cancelled tasks re-enter ``running`` only through
:meth:`DeploymentOrchestrator.retry`, which starts a new execution epoch.
Tasks whose variables fail validation are created directly in ``failed``
and never touch a host.

Every state, progress and log change is persisted (when a store is
configured) and published to subscribers.
"""

import asyncio
import posixpath
import shlex
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from ..models.deployment import (
    ConfigFile,
    DeploymentLog,
    DeploymentPlan,
    DeploymentTask,
    TaskEvent,
)
from ..models.enums import DeploymentStatus, ErrorKind, LogLevel, TaskEventKind
from .command_blocks import group_commands, is_meaningless_output
from .exceptions import (
    CommandError,
    CommandTimeoutError,
    ConnectionTimeoutError,
    DeploymentCancelledError,
    DeploymentValidationError,
    HostNotFoundError,
    InvalidTaskStateError,
    SSHConnectionError,
    TaskNotFoundError,
)
from .host_registry import HostRegistry
from .logging_config import get_deployment_logger
from .plan_provider import PlanProvider
from .settings import PoolSettings
from .ssh_pool import ConnectionHandle, ConnectionPool
from .task_store import TaskStore
from .template_store import TemplateStore
from .templates import normalize_variables

logger = get_deployment_logger()

PROGRESS_FLOOR = 0.1
PROGRESS_CEILING = 0.98
MAX_LOGGED_OUTPUT = 4000

Outcome = tuple[DeploymentStatus, str | None, ErrorKind | None]


@dataclass(frozen=True)
class _Step:
    command: str | None = None
    config: ConfigFile | None = None


def _now() -> datetime:
    return datetime.now(UTC)


class DeploymentOrchestrator:
    """Creates, runs, cancels and retries deployment tasks."""

    def __init__(
        self,
        pool: ConnectionPool,
        hosts: HostRegistry,
        templates: TemplateStore,
        plan_provider: PlanProvider,
        store: TaskStore | None = None,
        settings: PoolSettings | None = None,
    ):
        self.pool = pool
        self.hosts = hosts
        self.templates = templates
        self.plan_provider = plan_provider
        self.store = store
        self.settings = settings or pool.settings

        self._tasks: dict[str, DeploymentTask] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._subscribers: list[tuple[str | None, asyncio.Queue]] = []

    # -- creation ---------------------------------------------------------

    async def create_from_template(
        self,
        host_id: str,
        template_id: str,
        variables: Mapping[str, Any] | None = None,
    ) -> DeploymentTask:
        """Create a task by rendering a template.

        Invalid variables do not raise: the task is created in ``failed``
        with ``error_kind=validation`` so the problem is visible in history.

        Raises:
            HostNotFoundError: Unknown host
            TemplateNotFoundError: Unknown template
        """
        self.hosts.get(host_id)
        template = self.templates.get(template_id)
        task = DeploymentTask(
            host_id=host_id,
            template_id=template.id,
            description=template.name,
            variables=normalize_variables(variables),
        )
        self._register(task)
        try:
            task.plan = self.plan_provider.resolve_template(template, task.variables)
        except DeploymentValidationError as e:
            task.status = DeploymentStatus.FAILED
            task.error = str(e)
            task.error_kind = ErrorKind.VALIDATION
            task.completed_at = _now()
            self._done_event(task.id).set()
            await self._log(task, LogLevel.ERROR, f"Variable validation failed: {e}")
            await self._record_status(task)
            logger.warning(
                "Deployment rejected by validation",
                task_id=task.id,
                template_id=template.id,
                errors=e.errors,
            )
            return task.snapshot()

        await self._log(task, LogLevel.INFO, f"Deployment created from template '{template.id}'")
        return task.snapshot()

    async def create_from_plan(
        self, host_id: str, plan: DeploymentPlan, description: str | None = None
    ) -> DeploymentTask:
        self.hosts.get(host_id)
        task = DeploymentTask(
            host_id=host_id,
            description=description or plan.description,
            variables=dict(plan.variables),
            plan=plan,
        )
        self._register(task)
        await self._log(task, LogLevel.INFO, "Deployment created from plan")
        return task.snapshot()

    async def create_from_description(self, host_id: str, description: str) -> DeploymentTask:
        """Ask the plan provider for a plan, then create a task from it.

        Raises:
            PlanGenerationError: The provider produced no plan; no task is created
        """
        host = self.hosts.get(host_id)
        plan = await self.plan_provider.generate_from_description(description, host)
        return await self.create_from_plan(host_id, plan, description)

    def _register(self, task: DeploymentTask) -> None:
        self._tasks[task.id] = task
        self._done_events[task.id] = asyncio.Event()

    # -- execution --------------------------------------------------------

    async def execute(self, task_id: str) -> DeploymentTask:
        """Run a pending task to completion in the caller's task."""
        task = self._require(task_id)
        await self._begin(task)
        await self._drive(task)
        return task.snapshot()

    async def start(self, task_id: str) -> DeploymentTask:
        """Run a pending task in the background. Returns once it is running."""
        task = self._require(task_id)
        await self._begin(task)
        self._spawn(task)
        return task.snapshot()

    async def _begin(self, task: DeploymentTask) -> None:
        if task.status is not DeploymentStatus.PENDING:
            raise InvalidTaskStateError(
                f"Task {task.id} is {task.status.value}; only pending tasks can be started"
            )
        if task.plan is None:
            raise InvalidTaskStateError(f"Task {task.id} has no deployment plan")
        self._mark_running(task)
        await self._record_status(task)

    def _mark_running(self, task: DeploymentTask) -> None:
        task.status = DeploymentStatus.RUNNING
        task.started_at = _now()
        task.completed_at = None
        task.error = None
        task.error_kind = None
        self._cancel_events[task.id] = asyncio.Event()
        self._done_event(task.id).clear()

    def _spawn(self, task: DeploymentTask) -> None:
        runner = asyncio.create_task(self._drive(task), name=f"deploy-{task.id}")
        self._running[task.id] = runner

        def _forget(done: asyncio.Task) -> None:
            if self._running.get(task.id) is done:
                del self._running[task.id]

        runner.add_done_callback(_forget)

    async def _drive(self, task: DeploymentTask) -> None:
        cancel_event = self._cancel_events[task.id]
        handle: ConnectionHandle | None = None
        interrupted = False
        outcome: Outcome
        try:
            handle = await self._acquire(task, cancel_event)
            if handle is None:
                outcome = (DeploymentStatus.CANCELLED, None, None)
            else:
                await self._set_progress(task, PROGRESS_FLOOR)
                await self._run_steps(task, handle, cancel_event)
                outcome = (DeploymentStatus.COMPLETED, None, None)
        except DeploymentCancelledError:
            outcome = (DeploymentStatus.CANCELLED, None, None)
        except ConnectionTimeoutError as e:
            outcome = (DeploymentStatus.FAILED, str(e), ErrorKind.TIMEOUT)
        except (SSHConnectionError, HostNotFoundError) as e:
            outcome = (DeploymentStatus.FAILED, str(e), ErrorKind.CONNECTION)
        except CommandTimeoutError as e:
            outcome = (DeploymentStatus.FAILED, str(e), ErrorKind.TIMEOUT)
        except CommandError as e:
            outcome = (DeploymentStatus.FAILED, str(e), ErrorKind.COMMAND)
        except asyncio.CancelledError:
            interrupted = True
            outcome = (DeploymentStatus.CANCELLED, None, None)
        except Exception as e:
            logger.error(
                "Unexpected deployment failure", task_id=task.id, error=str(e), exc_info=True
            )
            outcome = (DeploymentStatus.FAILED, f"Unexpected error: {e}", ErrorKind.COMMAND)
        finally:
            if handle is not None:
                await asyncio.shield(handle.release())

        await asyncio.shield(self._finish(task, *outcome))
        if interrupted:
            raise asyncio.CancelledError

    async def _acquire(
        self, task: DeploymentTask, cancel_event: asyncio.Event
    ) -> ConnectionHandle | None:
        """Acquire the host's connection unless the task is cancelled first."""
        if cancel_event.is_set():
            return None
        acquire = asyncio.ensure_future(self.pool.acquire(task.host_id))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await asyncio.shield(self._abandon(acquire))
            raise
        finally:
            cancelled.cancel()

        if acquire in done:
            return acquire.result()
        await self._abandon(acquire)
        return None

    async def _abandon(self, acquire: asyncio.Future) -> None:
        acquire.cancel()
        try:
            handle = await acquire
        except (asyncio.CancelledError, SSHConnectionError, HostNotFoundError):
            return
        await handle.release()

    def _build_steps(self, plan: DeploymentPlan) -> list[_Step]:
        steps = [_Step(command=c) for c in group_commands(plan.commands)]
        if plan.config_file is not None:
            steps.append(_Step(config=plan.config_file))
        steps += [_Step(command=c) for c in group_commands(plan.post_commands)]
        return steps

    async def _run_steps(
        self, task: DeploymentTask, handle: ConnectionHandle, cancel_event: asyncio.Event
    ) -> None:
        steps = self._build_steps(task.plan)
        total = len(steps)
        for index, step in enumerate(steps, start=1):
            if cancel_event.is_set():
                raise DeploymentCancelledError(f"Task {task.id} cancelled")
            if step.config is not None:
                await self._write_config(task, handle, step.config)
            else:
                await self._run_command(task, handle, step.command)
            await self._set_progress(
                task, PROGRESS_FLOOR + (PROGRESS_CEILING - PROGRESS_FLOOR) * index / total
            )
        if cancel_event.is_set():
            raise DeploymentCancelledError(f"Task {task.id} cancelled")

    async def _run_command(
        self, task: DeploymentTask, handle: ConnectionHandle, command: str
    ) -> None:
        await self._log(task, LogLevel.INFO, "Executing command", command=command)
        try:
            result = await handle.run(command, self.settings.command_timeout)
        except CommandTimeoutError as e:
            await self._log(task, LogLevel.ERROR, str(e), command=command)
            raise
        task.last_command_result = result

        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            await self._log(
                task,
                LogLevel.ERROR,
                f"Command failed with exit status {result.exit_status}",
                command=command,
                output=detail[:MAX_LOGGED_OUTPUT] or None,
            )
            first_line = detail.splitlines()[0] if detail else ""
            message = f"Command exited with status {result.exit_status}"
            if first_line:
                message = f"{message}: {first_line}"
            raise CommandError(
                message, command=command, exit_status=result.exit_status, stderr=result.stderr
            )

        output = result.stdout.strip()
        await self._log(
            task,
            LogLevel.SUCCESS,
            "Command completed",
            command=command,
            output=None if is_meaningless_output(output) else output[:MAX_LOGGED_OUTPUT],
        )

    async def _write_config(
        self, task: DeploymentTask, handle: ConnectionHandle, config: ConfigFile
    ) -> None:
        directory = posixpath.dirname(config.path)
        if directory and directory != "/":
            await self._run_command(task, handle, f"mkdir -p {shlex.quote(directory)}")
        await self._log(task, LogLevel.INFO, f"Writing configuration file {config.path}")
        try:
            await handle.write_file(config.path, config.content, self.settings.command_timeout)
        except CommandError as e:
            await self._log(task, LogLevel.ERROR, str(e))
            raise
        await self._log(task, LogLevel.SUCCESS, f"Wrote configuration file {config.path}")

    async def _finish(
        self,
        task: DeploymentTask,
        status: DeploymentStatus,
        error: str | None,
        error_kind: ErrorKind | None,
    ) -> None:
        task.status = status
        task.error = error
        task.error_kind = error_kind
        task.completed_at = _now()
        if status is DeploymentStatus.COMPLETED:
            task.progress = 1.0
            await self._log(task, LogLevel.SUCCESS, "Deployment completed")
        elif status is DeploymentStatus.CANCELLED:
            await self._log(task, LogLevel.WARNING, "Deployment cancelled")
        else:
            await self._log(task, LogLevel.ERROR, f"Deployment failed: {error}")

        self._cancel_events.pop(task.id, None)
        await self._record_status(task)
        self._done_event(task.id).set()
        logger.info(
            "Deployment finished",
            task_id=task.id,
            host_id=task.host_id,
            status=status.value,
            epoch=task.epoch,
            error_kind=error_kind.value if error_kind else None,
        )

    # -- control ----------------------------------------------------------

    async def cancel(self, task_id: str) -> DeploymentTask:
        """Request cooperative cancellation of a running task.

        The command in flight finishes; the task stops at the next step
        boundary (or while still waiting for its connection).
        """
        task = self._require(task_id)
        event = self._cancel_events.get(task_id)
        if task.status is not DeploymentStatus.RUNNING or event is None:
            raise InvalidTaskStateError(
                f"Task {task_id} is {task.status.value}; only running tasks can be cancelled"
            )
        if not event.is_set():
            event.set()
            await self._log(task, LogLevel.WARNING, "Cancellation requested")
        return task.snapshot()

    async def retry(
        self,
        task_id: str,
        variables: Mapping[str, Any] | None = None,
        background: bool = False,
    ) -> DeploymentTask:
        """Run a failed or cancelled task again as a new epoch.

        New variables re-render the task's template. A task that failed
        validation can only be retried that way.

        Raises:
            InvalidTaskStateError: The task is not failed/cancelled, or needs new variables
            DeploymentValidationError: The new variables are still invalid
        """
        task = self._require(task_id)
        if task.status not in (DeploymentStatus.FAILED, DeploymentStatus.CANCELLED):
            raise InvalidTaskStateError(
                f"Task {task_id} is {task.status.value}; only failed or cancelled tasks can be retried"
            )

        if variables is not None and task.template_id is not None:
            template = self.templates.get(task.template_id)
            merged = {**task.variables, **normalize_variables(variables)}
            try:
                plan = self.plan_provider.resolve_template(template, merged)
            except DeploymentValidationError as e:
                await self._log(task, LogLevel.ERROR, f"Variable validation failed: {e}")
                raise
            task.plan = plan
            task.variables = merged
        elif task.error_kind is ErrorKind.VALIDATION or task.plan is None:
            raise InvalidTaskStateError(
                f"Task {task_id} failed validation; retry it with new variables"
            )

        task.epoch += 1
        task.progress = PROGRESS_FLOOR
        task.last_command_result = None
        self._mark_running(task)
        await self._log(task, LogLevel.INFO, f"Retrying deployment (epoch {task.epoch})")
        await self._record_status(task)

        if background:
            self._spawn(task)
        else:
            await self._drive(task)
        return task.snapshot()

    async def wait(self, task_id: str, timeout: float | None = None) -> DeploymentTask:
        """Wait until the task reaches a terminal status.

        Raises:
            TimeoutError: The task is still active after ``timeout`` seconds
        """
        task = self._require(task_id)
        if not task.is_terminal:
            async with asyncio.timeout(timeout):
                await self._done_event(task_id).wait()
        return task.snapshot()

    async def handle_host_deleted(self, host_id: str) -> None:
        """Stop work for a host that no longer exists."""
        for task in list(self._tasks.values()):
            if task.host_id != host_id:
                continue
            if task.status is DeploymentStatus.RUNNING:
                event = self._cancel_events.get(task.id)
                if event is not None and not event.is_set():
                    event.set()
                    await self._log(task, LogLevel.WARNING, "Host removed; cancelling deployment")
            elif task.status is DeploymentStatus.PENDING:
                task.status = DeploymentStatus.CANCELLED
                task.completed_at = _now()
                await self._log(task, LogLevel.WARNING, "Host removed before the deployment ran")
                await self._record_status(task)
                self._done_event(task.id).set()

    # -- queries ----------------------------------------------------------

    def get_task(self, task_id: str) -> DeploymentTask:
        return self._require(task_id).snapshot()

    def list_tasks(
        self, host_id: str | None = None, status: DeploymentStatus | None = None
    ) -> list[DeploymentTask]:
        tasks = [
            task
            for task in self._tasks.values()
            if (host_id is None or task.host_id == host_id)
            and (status is None or task.status is status)
        ]
        return [task.snapshot() for task in sorted(tasks, key=lambda t: t.created_at)]

    async def delete_task(self, task_id: str) -> None:
        task = self._require(task_id)
        if task.status is DeploymentStatus.RUNNING:
            raise InvalidTaskStateError(f"Task {task_id} is running; cancel it first")
        self._forget(task_id)
        if self.store is not None:
            try:
                await self.store.delete(task_id)
            except (aiosqlite.Error, OSError) as e:
                logger.error("Failed to delete deployment record", task_id=task_id, error=str(e))

    async def clear_history(self, host_id: str | None = None) -> int:
        """Delete finished tasks, optionally for one host. Returns the count removed."""
        finished = [
            task.id
            for task in self._tasks.values()
            if task.is_terminal and (host_id is None or task.host_id == host_id)
        ]
        for task_id in finished:
            self._forget(task_id)
        if self.store is not None and finished:
            try:
                await self.store.clear(finished)
            except (aiosqlite.Error, OSError) as e:
                logger.error("Failed to clear deployment history", error=str(e))
        logger.info("Cleared deployment history", count=len(finished), host_id=host_id)
        return len(finished)

    def _forget(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)
        self._done_events.pop(task_id, None)
        self._cancel_events.pop(task_id, None)

    async def load_history(self) -> int:
        """Restore stored tasks. Tasks that were running when the server stopped become failed."""
        if self.store is None:
            return 0
        tasks = await self.store.load_all()
        for task in tasks:
            self._register(task)
            if task.status is DeploymentStatus.RUNNING:
                task.status = DeploymentStatus.FAILED
                task.error = "Server stopped while the deployment was running"
                task.error_kind = ErrorKind.CONNECTION
                task.completed_at = _now()
                await self._log(task, LogLevel.ERROR, task.error)
            if task.is_terminal:
                self._done_event(task.id).set()
        logger.info("Loaded deployment history", count=len(tasks))
        return len(tasks)

    async def shutdown(self) -> None:
        """Interrupt background runs; they end as cancelled."""
        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        for runner in runners:
            try:
                await runner
            except asyncio.CancelledError:
                pass

    def _require(self, task_id: str) -> DeploymentTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(f"Deployment task '{task_id}' not found") from None

    def _done_event(self, task_id: str) -> asyncio.Event:
        return self._done_events.setdefault(task_id, asyncio.Event())

    # -- events and persistence --------------------------------------------

    @asynccontextmanager
    async def subscribe(
        self, task_id: str | None = None
    ) -> AsyncGenerator[asyncio.Queue[TaskEvent], None]:
        """Receive :class:`TaskEvent` updates, for one task or all tasks."""
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue()
        subscription = (task_id, queue)
        self._subscribers.append(subscription)
        try:
            yield queue
        finally:
            self._subscribers.remove(subscription)

    def _publish(
        self, task: DeploymentTask, kind: TaskEventKind, log: DeploymentLog | None = None
    ) -> None:
        if not self._subscribers:
            return
        event = TaskEvent(
            task_id=task.id,
            kind=kind,
            status=task.status,
            progress=task.progress,
            epoch=task.epoch,
            log=log,
        )
        for task_filter, queue in self._subscribers:
            if task_filter is None or task_filter == task.id:
                queue.put_nowait(event)

    async def _log(
        self,
        task: DeploymentTask,
        level: LogLevel,
        message: str,
        command: str | None = None,
        output: str | None = None,
    ) -> None:
        entry = DeploymentLog(
            level=level, message=message, epoch=task.epoch, command=command, output=output
        )
        task.logs.append(entry)
        self._publish(task, TaskEventKind.LOG, entry)
        await self._persist(task)

    async def _set_progress(self, task: DeploymentTask, value: float) -> None:
        value = min(max(value, task.progress), 1.0)
        if value == task.progress:
            return
        task.progress = value
        self._publish(task, TaskEventKind.PROGRESS)
        await self._persist(task)

    async def _record_status(self, task: DeploymentTask) -> None:
        self._publish(task, TaskEventKind.STATUS)
        await self._persist(task)

    async def _persist(self, task: DeploymentTask) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(task)
        except (aiosqlite.Error, OSError) as e:
            logger.error("Failed to persist deployment task", task_id=task.id, error=str(e))
