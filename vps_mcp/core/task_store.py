"""SQLite-backed deployment history."""

from pathlib import Path

import aiosqlite
import structlog
from pydantic import ValidationError

from ..models.deployment import DeploymentTask

logger = structlog.get_logger()


class TaskStore:
    """Persists deployment tasks (with their logs) as JSON rows."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.db_path = data_dir / "deployments.db"
        self._ensure_data_dir()

    def _ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS deployment_tasks (
                    id TEXT PRIMARY KEY,
                    host_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,  -- JSON serialized DeploymentTask
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deployment_tasks_host ON deployment_tasks(host_id)"
            )
            await db.commit()

        logger.info("Deployment history database initialized", db_path=str(self.db_path))

    async def save(self, task: DeploymentTask) -> None:
        """Insert or replace a task row."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO deployment_tasks (id, host_id, status, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(id) DO UPDATE SET
                    host_id = excluded.host_id,
                    status = excluded.status,
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (
                    task.id,
                    task.host_id,
                    task.status.value,
                    task.model_dump_json(),
                    task.created_at.isoformat(),
                ),
            )
            await db.commit()

    async def load_all(self) -> list[DeploymentTask]:
        """Load every stored task, oldest first. Unreadable rows are skipped."""
        tasks: list[DeploymentTask] = []
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, data FROM deployment_tasks ORDER BY created_at"
            ) as cursor:
                async for task_id, data in cursor:
                    try:
                        tasks.append(DeploymentTask.model_validate_json(data))
                    except ValidationError as e:
                        logger.warning(
                            "Skipping unreadable deployment record", task_id=task_id, error=str(e)
                        )
        return tasks

    async def delete(self, task_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM deployment_tasks WHERE id = ?", (task_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def clear(self, task_ids: list[str] | None = None) -> int:
        """Delete the given tasks, or all tasks when ``task_ids`` is None."""
        async with aiosqlite.connect(self.db_path) as db:
            if task_ids is None:
                cursor = await db.execute("DELETE FROM deployment_tasks")
            elif not task_ids:
                return 0
            else:
                placeholders = ",".join("?" for _ in task_ids)
                cursor = await db.execute(
                    f"DELETE FROM deployment_tasks WHERE id IN ({placeholders})",
                    tuple(task_ids),
                )
            await db.commit()
            return cursor.rowcount
