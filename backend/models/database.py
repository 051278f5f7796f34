"""SQLite-based persistence using aiosqlite.

This module provides two stores over one SQLite database file:

- ProjectStore: projects, their status, and the per-stage result tables
  (personas, competitors, competitor analyses, strategies, assets).
- TaskStore: the audit trail of dispatched tasks and dead-lettered events.

Each public method opens its own connection and commits its own unit of
work. Errors are logged and re-raised: a persister that fails to commit
must fail loudly so the worker can redeliver the event.

Tables:
    projects: Aggregate root with the workflow status.
    personas, competitors, competitor_analyses, strategies, assets:
        Stage results, cascade-deleted with their project.
    tasks: One row per dispatched task (never deleted).
    dead_letters: Events whose consumer chain kept failing.

Usage:
    >>> from models.database import ProjectStore
    >>> store = ProjectStore("./data/campaigns.db")
    >>> await store.init()
    >>> project = await store.create_project(name="Spring launch", user_id=9)
"""

import json
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, cast

import aiosqlite
import structlog

from errors import IllegalTransitionError, ProjectNotFoundError
from workflow.state_machine import (
    ProjectStatus,
    StageType,
    can_dispatch,
    ensure_legal,
    get_stage,
)

logger = structlog.get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        sector TEXT,
        brief TEXT NOT NULL DEFAULT '{}',
        user_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS personas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        task_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        age INTEGER,
        gender TEXT,
        job TEXT,
        quality_score REAL,
        raw_data TEXT,
        selected INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS competitors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        task_id TEXT,
        domain TEXT NOT NULL,
        title TEXT NOT NULL,
        url TEXT,
        alignment_score INTEGER NOT NULL DEFAULT 0,
        reasoning TEXT,
        offering_overlap TEXT,
        market_overlap TEXT,
        has_ads INTEGER NOT NULL DEFAULT 0,
        raw_data TEXT,
        selected INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS competitor_analyses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        task_id TEXT,
        competitors TEXT,
        strengths TEXT,
        weaknesses TEXT,
        market_positioning TEXT,
        differentiation_opportunities TEXT,
        marketing_strategies TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strategies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        task_id TEXT,
        positioning TEXT,
        key_messages TEXT,
        recommended_channels TEXT,
        timeline TEXT,
        budget_allocation TEXT,
        kpis TEXT,
        quality_score REAL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        task_id TEXT,
        asset_type TEXT NOT NULL,
        channel TEXT NOT NULL,
        content TEXT,
        variations TEXT,
        quality_score REAL,
        status TEXT NOT NULL DEFAULT 'draft',
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        uuid TEXT PRIMARY KEY,
        stage_type TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        arguments TEXT,
        context TEXT,
        result TEXT,
        tokens_input INTEGER,
        tokens_output INTEGER,
        tokens_total INTEGER,
        cost REAL,
        duration_ms INTEGER,
        model_used TEXT,
        error_message TEXT,
        error_trace TEXT,
        started_at REAL,
        completed_at REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dead_letters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        error TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, created_at)",
)

# Stage -> (table, writable columns). Only these names ever reach SQL.
STAGE_TABLES: dict[StageType, tuple[str, tuple[str, ...]]] = {
    StageType.PERSONA: (
        "personas",
        ("name", "description", "age", "gender", "job", "quality_score", "raw_data"),
    ),
    StageType.COMPETITOR_DETECTION: (
        "competitors",
        (
            "domain",
            "title",
            "url",
            "alignment_score",
            "reasoning",
            "offering_overlap",
            "market_overlap",
            "has_ads",
            "raw_data",
        ),
    ),
    StageType.COMPETITOR_ANALYSIS: (
        "competitor_analyses",
        (
            "competitors",
            "strengths",
            "weaknesses",
            "market_positioning",
            "differentiation_opportunities",
            "marketing_strategies",
        ),
    ),
    StageType.STRATEGY: (
        "strategies",
        (
            "positioning",
            "key_messages",
            "recommended_channels",
            "timeline",
            "budget_allocation",
            "kpis",
            "quality_score",
        ),
    ),
    StageType.ASSETS: (
        "assets",
        ("asset_type", "channel", "content", "variations", "quality_score", "status"),
    ),
}

_JSON_COLUMNS = {"brief", "raw_data", "arguments", "context", "result", "payload"}
_BOOL_COLUMNS = {"selected", "has_ads"}


def _encode(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return int(value)
    return value


def _decode_row(row: aiosqlite.Row) -> dict[str, Any]:
    data = dict(row)
    for key, value in data.items():
        if key in _JSON_COLUMNS and isinstance(value, str):
            try:
                data[key] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("invalid_json_column", column=key)
        elif key in _BOOL_COLUMNS and value is not None:
            data[key] = bool(value)
    return data


class _SQLiteStore:
    """Connection handling shared by both stores.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist.

        Also creates parent directories for the database file if needed.
        """
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()
            logger.info("store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("store_init_failed", db_path=self.db_path, error=str(e))
            raise

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db


class ProjectStore(_SQLiteStore):
    """Async SQLite store for projects and their stage results.

    Status changes always go through a conditional UPDATE
    (``... WHERE id = ? AND status = ?``), so concurrent or duplicate events
    can never move a project from a status they did not expect.
    """

    # -----------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        user_id: int,
        sector: str | None = None,
        brief: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert a new project in ``draft`` status and return it."""
        now = time.time()
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO projects
                        (name, sector, brief, user_id, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        sector,
                        _encode(brief or {}),
                        user_id,
                        ProjectStatus.DRAFT.value,
                        now,
                        now,
                    ),
                )
                project_id = cast(int, cursor.lastrowid)
                await db.commit()
        except Exception as e:
            logger.error("project_create_failed", name=name, error=str(e))
            raise

        logger.info("project_created", project_id=project_id, user_id=user_id)
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def get_project(self, project_id: int) -> dict[str, Any] | None:
        """Return the project row (brief decoded) or None."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        project = _decode_row(row)
        project["status"] = ProjectStatus(project["status"])
        return project

    async def get_status(self, project_id: int) -> ProjectStatus | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT status FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        return ProjectStatus(row["status"]) if row else None

    async def update_brief(self, project_id: int, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge ``updates`` into the project's brief and return the new brief."""
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        brief = {**project["brief"], **updates}
        async with self._connect() as db:
            await db.execute(
                "UPDATE projects SET brief = ?, updated_at = ? WHERE id = ?",
                (_encode(brief), time.time(), project_id),
            )
            await db.commit()
        return brief

    async def transition_status(
        self,
        project_id: int,
        expected: ProjectStatus,
        target: ProjectStatus,
    ) -> bool:
        """Guarded status transition.

        Args:
            project_id: Project to update.
            expected: Status the project must currently hold.
            target: Status to move to.

        Returns:
            True if the row was updated, False if the project is missing or
            holds another status.

        Raises:
            IllegalTransitionError: If ``expected -> target`` is not an edge.
        """
        ensure_legal(expected, target)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE projects SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (target.value, time.time(), project_id, expected.value),
            )
            await db.commit()
            changed = cursor.rowcount == 1

        logger.info(
            "project_status_transition",
            project_id=project_id,
            expected=expected.value,
            target=target.value,
            applied=changed,
        )
        return changed

    async def begin_stage(
        self,
        project_id: int,
        stage: StageType,
        *,
        continuation: bool = False,
    ) -> ProjectStatus:
        """Flip a project to a stage's in-progress status.

        Args:
            project_id: Project to update.
            stage: Stage being dispatched.
            continuation: True when the dispatch chains from a stage that
                shares the same in-progress status; the project is then
                expected to already hold it.

        Returns:
            The status the project held before the call.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            IllegalTransitionError: If the stage cannot start from the
                project's current status.
        """
        definition = get_stage(stage)
        current = await self.get_status(project_id)
        if current is None:
            raise ProjectNotFoundError(project_id)

        if continuation and current == definition.in_progress:
            return current
        if not can_dispatch(stage, current):
            raise IllegalTransitionError(current, definition.in_progress)
        if not await self.transition_status(project_id, current, definition.in_progress):
            # Another request moved the project between the read and the update.
            latest = await self.get_status(project_id)
            raise IllegalTransitionError(latest or current, definition.in_progress)
        return current

    # -----------------------------------------------------------------
    # Stage results
    # -----------------------------------------------------------------

    async def replace_stage_results(
        self,
        project_id: int,
        stage: StageType,
        rows: Iterable[dict[str, Any]],
        *,
        expected: ProjectStatus,
        target: ProjectStatus | None,
        task_id: str | None = None,
    ) -> bool:
        """Replace a stage's results and advance the project, atomically.

        Within one write transaction: if the project holds ``expected``, all
        existing rows of the stage are deleted, ``rows`` are inserted and the
        status moves to ``target`` (when given). If the project holds any
        other status nothing is written.

        Returns:
            True if the results were replaced, False if the status guard
            rejected the event.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        if target is not None:
            ensure_legal(expected, target)
        table, columns = STAGE_TABLES[stage]
        rows = list(rows)
        now = time.time()
        insert_sql = (
            f"INSERT INTO {table} (project_id, task_id, created_at, {', '.join(columns)}) "
            f"VALUES ({', '.join('?' * (len(columns) + 3))})"
        )

        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                cursor = await db.execute(
                    "SELECT status FROM projects WHERE id = ?", (project_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    await db.rollback()
                    raise ProjectNotFoundError(project_id)
                if row["status"] != expected.value:
                    await db.rollback()
                    logger.info(
                        "stage_results_skipped_status_guard",
                        project_id=project_id,
                        stage=stage.value,
                        expected=expected.value,
                        actual=row["status"],
                    )
                    return False

                await db.execute(f"DELETE FROM {table} WHERE project_id = ?", (project_id,))
                await db.executemany(
                    insert_sql,
                    [
                        (project_id, task_id, now, *(_encode(r.get(c)) for c in columns))
                        for r in rows
                    ],
                )
                if target is not None and target != expected:
                    await db.execute(
                        """
                        UPDATE projects SET status = ?, updated_at = ?
                        WHERE id = ? AND status = ?
                        """,
                        (target.value, now, project_id, expected.value),
                    )
                await db.commit()
        except ProjectNotFoundError:
            raise
        except Exception as e:
            logger.error(
                "stage_results_replace_failed",
                project_id=project_id,
                stage=stage.value,
                error=str(e),
            )
            raise

        logger.info(
            "stage_results_replaced",
            project_id=project_id,
            stage=stage.value,
            row_count=len(rows),
            status=(target or expected).value,
        )
        return True

    async def _list(
        self, table: str, project_id: int, where: str = "", params: tuple[Any, ...] = ()
    ) -> list[dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM {table} WHERE project_id = ? {where} ORDER BY id",
                (project_id, *params),
            )
            rows = await cursor.fetchall()
        return [_decode_row(row) for row in rows]

    async def list_personas(
        self, project_id: int, selected_only: bool = False
    ) -> list[dict[str, Any]]:
        return await self._list("personas", project_id, "AND selected = 1" if selected_only else "")

    async def list_competitors(
        self, project_id: int, selected_only: bool = False
    ) -> list[dict[str, Any]]:
        return await self._list(
            "competitors", project_id, "AND selected = 1" if selected_only else ""
        )

    async def get_competitor_analysis(self, project_id: int) -> dict[str, Any] | None:
        rows = await self._list("competitor_analyses", project_id)
        return rows[-1] if rows else None

    async def get_strategy(self, project_id: int) -> dict[str, Any] | None:
        rows = await self._list("strategies", project_id)
        return rows[-1] if rows else None

    async def list_assets(self, project_id: int) -> list[dict[str, Any]]:
        return await self._list("assets", project_id)

    async def count_stage_results(self, project_id: int) -> dict[StageType, int]:
        """Number of stored result rows per stage for a project."""
        counts: dict[StageType, int] = {}
        async with self._connect() as db:
            for stage, (table, _columns) in STAGE_TABLES.items():
                cursor = await db.execute(
                    f"SELECT COUNT(*) AS n FROM {table} WHERE project_id = ?", (project_id,)
                )
                row = await cursor.fetchone()
                counts[stage] = row["n"] if row else 0
        return counts

    # -----------------------------------------------------------------
    # User selections
    # -----------------------------------------------------------------

    async def _set_selection(
        self, db: aiosqlite.Connection, table: str, project_id: int, ids: list[int]
    ) -> None:
        placeholders = ", ".join("?" * len(ids))
        cursor = await db.execute(
            f"SELECT COUNT(*) AS n FROM {table} WHERE project_id = ? AND id IN ({placeholders})",
            (project_id, *ids),
        )
        row = await cursor.fetchone()
        if row is None or row["n"] != len(set(ids)):
            raise ValueError(f"Unknown {table} ids for project {project_id}")
        await db.execute(f"UPDATE {table} SET selected = 0 WHERE project_id = ?", (project_id,))
        await db.execute(
            f"UPDATE {table} SET selected = 1 WHERE project_id = ? AND id IN ({placeholders})",
            (project_id, *ids),
        )

    async def select_personas(self, project_id: int, persona_ids: list[int]) -> None:
        """Mark exactly ``persona_ids`` as selected.

        Raises:
            ValueError: If the list is empty or holds ids of another project.
        """
        if not persona_ids:
            raise ValueError("At least one persona must be selected")
        async with self._connect() as db:
            await self._set_selection(db, "personas", project_id, persona_ids)
            await db.commit()
        logger.info("personas_selected", project_id=project_id, count=len(set(persona_ids)))

    async def select_competitors(
        self, project_id: int, competitor_ids: list[int]
    ) -> ProjectStatus:
        """Mark exactly ``competitor_ids`` as selected and validate the list.

        Moves the project from competitor_detected to competitor_validated;
        re-selecting on an already validated project keeps its status.

        Returns:
            The project status after the call.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            IllegalTransitionError: If the project is not awaiting validation.
            ValueError: If the list is empty or holds ids of another project.
        """
        if not competitor_ids:
            raise ValueError("At least one competitor must be selected")

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT status FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
            if row is None:
                await db.rollback()
                raise ProjectNotFoundError(project_id)
            current = ProjectStatus(row["status"])
            if current not in (
                ProjectStatus.COMPETITOR_DETECTED,
                ProjectStatus.COMPETITOR_VALIDATED,
            ):
                await db.rollback()
                raise IllegalTransitionError(current, ProjectStatus.COMPETITOR_VALIDATED)
            try:
                await self._set_selection(db, "competitors", project_id, competitor_ids)
            except ValueError:
                await db.rollback()
                raise
            await db.execute(
                "UPDATE projects SET status = ?, updated_at = ? WHERE id = ?",
                (ProjectStatus.COMPETITOR_VALIDATED.value, time.time(), project_id),
            )
            await db.commit()

        logger.info(
            "competitors_validated",
            project_id=project_id,
            selected=len(set(competitor_ids)),
        )
        return ProjectStatus.COMPETITOR_VALIDATED

    async def review_asset(self, project_id: int, asset_id: int, status: str) -> bool:
        """Set an asset's review status. Returns False if the asset is not the project's."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE assets SET status = ? WHERE id = ? AND project_id = ?",
                (status, asset_id, project_id),
            )
            await db.commit()
            updated = cursor.rowcount == 1
        logger.info(
            "asset_reviewed",
            project_id=project_id,
            asset_id=asset_id,
            status=status,
            applied=updated,
        )
        return updated


class TaskStore(_SQLiteStore):
    """Audit trail of dispatched tasks.

    Task rows are correlated to projects through their stored context, not
    a foreign key, and are never deleted.
    """

    async def create_task(
        self,
        task_id: str,
        stage: StageType,
        agent_id: str,
        arguments: dict[str, Any],
        context: dict[str, Any],
    ) -> None:
        """Insert a task record in ``pending`` status."""
        now = time.time()
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO tasks
                        (uuid, stage_type, agent_id, status, arguments, context,
                         created_at, updated_at)
                    VALUES (?, ?, ?, 'pending', ?, ?, ?, ?)
                    """,
                    (
                        task_id,
                        stage.value,
                        agent_id,
                        _encode(arguments),
                        _encode(context),
                        now,
                        now,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error("task_create_failed", task_id=task_id, error=str(e))
            raise
        logger.debug("task_created", task_id=task_id, stage=stage.value)

    async def _update(self, task_id: str, **fields: Any) -> bool:
        fields["updated_at"] = time.time()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE tasks SET {assignments} WHERE uuid = ?",
                (*(_encode(v) for v in fields.values()), task_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_processing(self, task_id: str) -> bool:
        return await self._update(task_id, status="processing", started_at=time.time())

    async def mark_completed(
        self,
        task_id: str,
        result: dict[str, Any],
        tokens_input: int = 0,
        tokens_output: int = 0,
        cost: float = 0.0,
        duration_ms: int = 0,
        model_used: str | None = None,
    ) -> bool:
        """Store the result and metrics of a completed task."""
        return await self._update(
            task_id,
            status="completed",
            result=result,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            tokens_total=tokens_input + tokens_output,
            cost=cost,
            duration_ms=duration_ms,
            model_used=model_used,
            completed_at=time.time(),
        )

    async def mark_failed(
        self,
        task_id: str,
        error_message: str,
        error_trace: str | None = None,
        duration_ms: int = 0,
    ) -> bool:
        return await self._update(
            task_id,
            status="failed",
            error_message=error_message,
            error_trace=error_trace,
            duration_ms=duration_ms,
            completed_at=time.time(),
        )

    async def get_task(self, task_id: str) -> dict[str, Any] | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM tasks WHERE uuid = ?", (task_id,))
            row = await cursor.fetchone()
        return _decode_row(row) if row else None

    async def find_chained_task(self, parent_task_id: str) -> str | None:
        """Id of the live task dispatched as the continuation of ``parent_task_id``.

        Tasks whose dispatch failed are ignored so a redelivery can retry.
        """
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT uuid FROM tasks
                WHERE json_extract(context, '$.extra.chained_from') = ?
                  AND status != 'failed'
                ORDER BY created_at LIMIT 1
                """,
                (parent_task_id,),
            )
            row = await cursor.fetchone()
        return row["uuid"] if row else None

    async def list_pending(self) -> list[dict[str, Any]]:
        """Tasks dispatched but never picked up, oldest first."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM tasks WHERE status = 'pending' ORDER BY created_at"
            )
            rows = await cursor.fetchall()
        return [_decode_row(row) for row in rows]

    async def record_dead_letter(
        self,
        task_id: str,
        event_type: str,
        payload: dict[str, Any],
        error: str,
        attempts: int,
    ) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO dead_letters
                    (task_id, event_type, payload, error, attempts, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (task_id, event_type, _encode(payload), error, attempts, time.time()),
            )
            await db.commit()
        logger.warning(
            "event_dead_lettered",
            task_id=task_id,
            event_type=event_type,
            attempts=attempts,
        )

    async def list_dead_letters(self, task_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM dead_letters"
        params: tuple[Any, ...] = ()
        if task_id is not None:
            query += " WHERE task_id = ?"
            params = (task_id,)
        async with self._connect() as db:
            cursor = await db.execute(query + " ORDER BY id", params)
            rows = await cursor.fetchall()
        return [_decode_row(row) for row in rows]
