"""SQLite persistence for workflows, sessions, subtasks and artifacts.

This module provides the ProjectStore class, the single transactional store
shared by every agent session. Each operation opens its own aiosqlite
connection, mirroring how the sessions run concurrently and independently.

Unlike display metadata, these records carry coordination state, so store
errors are logged and then propagated to the caller.

Tables:
    workflows: Stage, approval gate and branch data per workflow.
    sessions: Agent sessions with their context and parent linkage.
    subtasks: Fanned-out work units and their terminal outcome.
    artifacts: Approval-gated stage outputs.
    stage_transitions: Append-only audit of stage changes.
    fan_in_results: Merged sub-agent output per coordinator session.

Usage:
    >>> from models.database import ProjectStore
    >>> store = ProjectStore("./data/project.db")
    >>> await store.init()
    >>> await store.create_subtask(
    ...     subtask_id="subtask_abc123",
    ...     parent_session_id="sess_coord",
    ...     workflow_id="wf_1",
    ...     task_definition={"label": "API layer", "files": ["src/api.ts"]},
    ... )
"""

import json
import time
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    TERMINAL_SESSION_STATUSES,
    AgentRole,
    ArtifactRecord,
    ArtifactStatus,
    ArtifactType,
    FanInResult,
    MergedSubtaskResults,
    SessionContextType,
    SessionRecord,
    SessionStatus,
    StageTransitionRecord,
    SubtaskRecord,
    SubtaskStatus,
    SubtaskTransition,
    Workflow,
    WorkflowStatus,
)

logger = structlog.get_logger(__name__)

_TERMINAL_SQL = "('completed', 'failed')"


class _NotFoundError(KeyError):
    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0]) if self.args else super().__str__()


class WorkflowNotFoundError(_NotFoundError):
    """Raised when a workflow id does not exist."""


class SubtaskNotFoundError(_NotFoundError):
    """Raised when a subtask id does not exist."""


def generate_id(prefix: str) -> str:
    """Generate a unique identifier in the format ``{prefix}_{12 hex chars}``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _load_json(raw: str | None, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class ProjectStore:
    """Async SQLite store for workflow coordination state.

    Attributes:
        db_path: Path to the SQLite database file.
        busy_timeout: Seconds a connection waits for the write lock.
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
            busy_timeout: Seconds to wait for a competing writer.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # Autocommit mode: multi-statement units open their own transaction.
        async with aiosqlite.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
        ) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def init(self) -> None:
        """Create database tables if they do not exist.

        Also creates parent directories for the database file if needed.
        """
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS workflows (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        description TEXT,
                        status TEXT NOT NULL,
                        awaiting_approval INTEGER NOT NULL DEFAULT 0,
                        pending_artifact_type TEXT,
                        current_session_id TEXT,
                        base_branch TEXT,
                        skipped_stages TEXT NOT NULL DEFAULT '[]',
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS sessions (
                        id TEXT PRIMARY KEY,
                        context_type TEXT NOT NULL,
                        context_id TEXT NOT NULL,
                        agent_role TEXT NOT NULL,
                        workflow_id TEXT,
                        parent_session_id TEXT,
                        status TEXT NOT NULL DEFAULT 'active',
                        error_message TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS subtasks (
                        id TEXT PRIMARY KEY,
                        parent_session_id TEXT NOT NULL,
                        workflow_id TEXT NOT NULL,
                        task_definition TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        findings TEXT,
                        error TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS artifacts (
                        id TEXT PRIMARY KEY,
                        workflow_id TEXT NOT NULL,
                        artifact_type TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        payload TEXT NOT NULL DEFAULT '{}',
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS stage_transitions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        workflow_id TEXT NOT NULL,
                        from_stage TEXT NOT NULL,
                        to_stage TEXT NOT NULL,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS fan_in_results (
                        parent_session_id TEXT PRIMARY KEY,
                        workflow_id TEXT NOT NULL,
                        message TEXT NOT NULL,
                        delivered INTEGER NOT NULL DEFAULT 0,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sessions_parent
                    ON sessions(parent_session_id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_subtasks_parent_session
                    ON subtasks(parent_session_id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_subtasks_workflow
                    ON subtasks(workflow_id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_subtasks_status
                    ON subtasks(status)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_artifacts_workflow
                    ON artifacts(workflow_id, artifact_type, created_at DESC)
                """)
            logger.info("project_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "project_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Row conversion
    # -----------------------------------------------------------------

    @staticmethod
    def _to_workflow(row: aiosqlite.Row) -> Workflow:
        skipped = _load_json(row["skipped_stages"], [])
        return Workflow(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            status=WorkflowStatus(row["status"]),
            awaiting_approval=bool(row["awaiting_approval"]),
            pending_artifact_type=row["pending_artifact_type"],
            current_session_id=row["current_session_id"],
            base_branch=row["base_branch"],
            skipped_stages=skipped if isinstance(skipped, list) else [],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_session(row: aiosqlite.Row) -> SessionRecord:
        return SessionRecord(**dict(row))

    @staticmethod
    def _to_subtask(row: aiosqlite.Row) -> SubtaskRecord:
        definition = _load_json(row["task_definition"], {})
        return SubtaskRecord(
            id=row["id"],
            parent_session_id=row["parent_session_id"],
            workflow_id=row["workflow_id"],
            task_definition=definition if isinstance(definition, dict) else {},
            status=SubtaskStatus(row["status"]),
            findings=_load_json(row["findings"], None),
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_artifact(row: aiosqlite.Row) -> ArtifactRecord:
        payload = _load_json(row["payload"], {})
        return ArtifactRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            artifact_type=ArtifactType(row["artifact_type"]),
            status=ArtifactStatus(row["status"]),
            payload=payload if isinstance(payload, dict) else {},
            created_at=row["created_at"],
        )

    async def _fetch_one(self, query: str, params: tuple[Any, ...]) -> aiosqlite.Row | None:
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return await cursor.fetchone()

    async def _fetch_all(self, query: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return list(await cursor.fetchall())

    async def _execute(self, query: str, params: tuple[Any, ...]) -> int:
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return cursor.rowcount

    # -----------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------

    async def create_workflow(
        self,
        workflow_id: str,
        title: str,
        status: WorkflowStatus,
        description: str | None = None,
        base_branch: str | None = None,
        skipped_stages: Iterable[WorkflowStatus] = (),
    ) -> Workflow:
        """Insert a new workflow record."""
        now = time.time()
        skipped = [str(stage) for stage in skipped_stages]
        try:
            await self._execute(
                """
                INSERT INTO workflows
                    (id, title, description, status, base_branch,
                     skipped_stages, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    workflow_id,
                    title,
                    description,
                    status.value,
                    base_branch,
                    json.dumps(skipped),
                    now,
                    now,
                ),
            )
        except Exception as e:
            logger.error("workflow_create_failed", workflow_id=workflow_id, error=str(e))
            raise
        logger.debug("workflow_saved", workflow_id=workflow_id, status=status.value)
        return Workflow(
            id=workflow_id,
            title=title,
            description=description,
            status=status,
            base_branch=base_branch,
            skipped_stages=[WorkflowStatus(s) for s in skipped],
            created_at=now,
            updated_at=now,
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id, or None if it does not exist."""
        row = await self._fetch_one("SELECT * FROM workflows WHERE id = ?", (workflow_id,))
        return self._to_workflow(row) if row is not None else None

    async def require_workflow(self, workflow_id: str) -> Workflow:
        """Retrieve a workflow by id.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    async def set_current_session(self, workflow_id: str, session_id: str | None) -> None:
        await self._execute(
            "UPDATE workflows SET current_session_id = ?, updated_at = ? WHERE id = ?",
            (session_id, time.time(), workflow_id),
        )

    async def set_awaiting_approval(self, workflow_id: str, artifact_type: ArtifactType) -> None:
        """Raise the approval gate for a workflow."""
        await self._execute(
            """
            UPDATE workflows
            SET awaiting_approval = 1, pending_artifact_type = ?, updated_at = ?
            WHERE id = ?
            """,
            (artifact_type.value, time.time(), workflow_id),
        )

    async def clear_awaiting_approval(self, workflow_id: str) -> None:
        await self._execute(
            """
            UPDATE workflows
            SET awaiting_approval = 0, pending_artifact_type = NULL, updated_at = ?
            WHERE id = ?
            """,
            (time.time(), workflow_id),
        )

    async def set_base_branch(self, workflow_id: str, base_branch: str) -> None:
        await self._execute(
            "UPDATE workflows SET base_branch = ?, updated_at = ? WHERE id = ?",
            (base_branch, time.time(), workflow_id),
        )

    async def set_skipped_stages(
        self, workflow_id: str, skipped_stages: Iterable[WorkflowStatus]
    ) -> None:
        """Record stages bypassed via the quick path."""
        await self._execute(
            "UPDATE workflows SET skipped_stages = ?, updated_at = ? WHERE id = ?",
            (
                json.dumps([str(stage) for stage in skipped_stages]),
                time.time(),
                workflow_id,
            ),
        )

    async def transition_stage(
        self,
        workflow_id: str,
        from_stage: WorkflowStatus,
        to_stage: WorkflowStatus,
        session_id: str | None,
    ) -> bool:
        """Move a workflow from ``from_stage`` to ``to_stage``.

        The update only applies while the workflow is still in
        ``from_stage``; it also clears the approval gate and appends a
        stage_transitions row in the same transaction.

        Returns:
            True if the workflow moved, False if it was no longer in
            ``from_stage``.
        """
        now = time.time()
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    """
                    UPDATE workflows
                    SET status = ?, current_session_id = ?, awaiting_approval = 0,
                        pending_artifact_type = NULL, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (to_stage.value, session_id, now, workflow_id, from_stage.value),
                )
                moved = cursor.rowcount == 1
                if moved:
                    await db.execute(
                        """
                        INSERT INTO stage_transitions
                            (workflow_id, from_stage, to_stage, created_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (workflow_id, from_stage.value, to_stage.value, now),
                    )
                await db.execute("COMMIT")
            except Exception as e:
                await db.execute("ROLLBACK")
                logger.error(
                    "workflow_transition_failed",
                    workflow_id=workflow_id,
                    to_stage=to_stage.value,
                    error=str(e),
                )
                raise
        return moved

    async def list_stage_transitions(self, workflow_id: str) -> list[StageTransitionRecord]:
        rows = await self._fetch_all(
            """
            SELECT workflow_id, from_stage, to_stage, created_at
            FROM stage_transitions WHERE workflow_id = ? ORDER BY id
            """,
            (workflow_id,),
        )
        return [StageTransitionRecord(**dict(row)) for row in rows]

    # -----------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        context_type: SessionContextType,
        context_id: str,
        agent_role: AgentRole,
        workflow_id: str | None = None,
        parent_session_id: str | None = None,
    ) -> SessionRecord:
        """Insert a new session record in ``active`` status."""
        now = time.time()
        try:
            await self._execute(
                """
                INSERT INTO sessions
                    (id, context_type, context_id, agent_role, workflow_id,
                     parent_session_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    context_type.value,
                    context_id,
                    agent_role.value,
                    workflow_id,
                    parent_session_id,
                    SessionStatus.ACTIVE.value,
                    now,
                    now,
                ),
            )
        except Exception as e:
            logger.error("session_create_failed", session_id=session_id, error=str(e))
            raise
        return SessionRecord(
            id=session_id,
            context_type=context_type,
            context_id=context_id,
            agent_role=agent_role,
            workflow_id=workflow_id,
            parent_session_id=parent_session_id,
            created_at=now,
            updated_at=now,
        )

    async def get_session(self, session_id: str) -> SessionRecord | None:
        row = await self._fetch_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._to_session(row) if row is not None else None

    async def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        error_message: str | None = None,
    ) -> bool:
        """Set a session's status.

        Terminal statuses are sticky: a late ``active``/``idle`` write from
        a turn that was cancelled after queueing it changes nothing.

        Returns:
            True if the row was updated.
        """
        query = """
            UPDATE sessions SET status = ?, error_message = ?, updated_at = ?
            WHERE id = ?
        """
        if status not in TERMINAL_SESSION_STATUSES:
            query += " AND status NOT IN ('completed', 'error')"
        updated = await self._execute(
            query, (status.value, error_message, time.time(), session_id)
        )
        return updated > 0

    async def list_child_sessions(self, parent_session_id: str) -> list[SessionRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM sessions WHERE parent_session_id = ? ORDER BY created_at",
            (parent_session_id,),
        )
        return [self._to_session(row) for row in rows]

    # -----------------------------------------------------------------
    # Subtasks
    # -----------------------------------------------------------------

    async def create_subtask(
        self,
        subtask_id: str,
        parent_session_id: str,
        workflow_id: str,
        task_definition: dict[str, Any],
    ) -> SubtaskRecord:
        """Insert a new subtask in ``pending`` status."""
        created = await self.create_subtasks(
            parent_session_id, workflow_id, [(subtask_id, task_definition)]
        )
        return created[0]

    async def create_subtasks(
        self,
        parent_session_id: str,
        workflow_id: str,
        definitions: list[tuple[str, dict[str, Any]]],
    ) -> list[SubtaskRecord]:
        """Insert sibling subtasks in ``pending`` status, all or none.

        Args:
            parent_session_id: Coordinator session the subtasks report to
            workflow_id: Workflow the subtasks belong to
            definitions: ``(subtask_id, task_definition)`` pairs

        Returns:
            The created records, in input order.
        """
        now = time.time()
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.executemany(
                    """
                    INSERT INTO subtasks
                        (id, parent_session_id, workflow_id, task_definition,
                         status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            subtask_id,
                            parent_session_id,
                            workflow_id,
                            json.dumps(definition),
                            SubtaskStatus.PENDING.value,
                            now,
                            now,
                        )
                        for subtask_id, definition in definitions
                    ],
                )
                await db.execute("COMMIT")
            except Exception as e:
                await db.execute("ROLLBACK")
                logger.error(
                    "subtask_create_failed",
                    parent_session_id=parent_session_id,
                    count=len(definitions),
                    error=str(e),
                )
                raise
        return [
            SubtaskRecord(
                id=subtask_id,
                parent_session_id=parent_session_id,
                workflow_id=workflow_id,
                task_definition=definition,
                status=SubtaskStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            for subtask_id, definition in definitions
        ]

    async def start_subtask(self, subtask_id: str) -> bool:
        """Move a subtask from ``pending`` to ``running``.

        Returns:
            True if the subtask was pending and is now running.
        """
        changed = await self._execute(
            """
            UPDATE subtasks SET status = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                SubtaskStatus.RUNNING.value,
                time.time(),
                subtask_id,
                SubtaskStatus.PENDING.value,
            ),
        )
        return changed == 1

    async def get_subtask(self, subtask_id: str) -> SubtaskRecord | None:
        row = await self._fetch_one("SELECT * FROM subtasks WHERE id = ?", (subtask_id,))
        return self._to_subtask(row) if row is not None else None

    async def list_subtasks_for_parent(self, parent_session_id: str) -> list[SubtaskRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM subtasks WHERE parent_session_id = ? ORDER BY created_at, rowid",
            (parent_session_id,),
        )
        return [self._to_subtask(row) for row in rows]

    async def list_subtasks_for_workflow(self, workflow_id: str) -> list[SubtaskRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM subtasks WHERE workflow_id = ? ORDER BY created_at, rowid",
            (workflow_id,),
        )
        return [self._to_subtask(row) for row in rows]

    async def list_stale_unfinished_subtasks(self, updated_before: float) -> list[SubtaskRecord]:
        """Pending or running subtasks whose last update is older than ``updated_before``.

        A pending subtask whose child was never launched (e.g. a crash between
        persisting and launching) is as stuck as a hung running one.
        """
        rows = await self._fetch_all(
            """
            SELECT * FROM subtasks
            WHERE status IN (?, ?) AND updated_at < ?
            ORDER BY updated_at
            """,
            (SubtaskStatus.PENDING.value, SubtaskStatus.RUNNING.value, updated_before),
        )
        return [self._to_subtask(row) for row in rows]

    async def complete_and_check_siblings(
        self, subtask_id: str, findings: Any
    ) -> SubtaskTransition:
        """Mark a subtask completed and check whether all siblings are done."""
        return await self._terminate_and_check(
            subtask_id,
            SubtaskStatus.COMPLETED,
            findings_json=json.dumps(findings),
            error=None,
        )

    async def fail_and_check_siblings(self, subtask_id: str, error: str) -> SubtaskTransition:
        """Mark a subtask failed and check whether all siblings are done."""
        return await self._terminate_and_check(
            subtask_id,
            SubtaskStatus.FAILED,
            findings_json=None,
            error=error or "Unknown error",
        )

    async def _terminate_and_check(
        self,
        subtask_id: str,
        status: SubtaskStatus,
        *,
        findings_json: str | None,
        error: str | None,
    ) -> SubtaskTransition:
        """Write a terminal status and count unfinished siblings atomically.

        ``BEGIN IMMEDIATE`` takes the database write lock before the write,
        so concurrent callers for the same parent run this block one at a
        time and only the last writer can observe zero unfinished siblings.
        The update is conditional on the subtask not being terminal yet; a
        second report changes nothing and never resumes the coordinator.

        Raises:
            SubtaskNotFoundError: If the subtask does not exist.
        """
        now = time.time()
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT * FROM subtasks WHERE id = ?", (subtask_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise SubtaskNotFoundError(f"Subtask not found: {subtask_id}")

                cursor = await db.execute(
                    f"""
                    UPDATE subtasks
                    SET status = ?, findings = ?, error = ?, updated_at = ?
                    WHERE id = ? AND status NOT IN {_TERMINAL_SQL}
                    """,
                    (status.value, findings_json, error, now, subtask_id),
                )
                duplicate = cursor.rowcount == 0

                cursor = await db.execute(
                    f"""
                    SELECT COUNT(*) FROM subtasks
                    WHERE parent_session_id = ? AND status NOT IN {_TERMINAL_SQL}
                    """,
                    (row["parent_session_id"],),
                )
                count_row = await cursor.fetchone()
                remaining = int(count_row[0]) if count_row else 0
                await db.execute("COMMIT")
            except Exception as e:
                await db.execute("ROLLBACK")
                if not isinstance(e, SubtaskNotFoundError):
                    logger.error(
                        "subtask_terminal_transition_failed",
                        subtask_id=subtask_id,
                        status=status.value,
                        error=str(e),
                    )
                raise

        all_done = remaining == 0
        return SubtaskTransition(
            subtask_id=subtask_id,
            parent_session_id=row["parent_session_id"],
            workflow_id=row["workflow_id"],
            status=SubtaskStatus(row["status"]) if duplicate else status,
            all_done=all_done,
            should_resume=all_done and not duplicate,
            duplicate=duplicate,
        )

    async def merged_results_for(self, parent_session_id: str) -> MergedSubtaskResults:
        """Partition every sibling of a coordinator session by outcome."""
        merged = MergedSubtaskResults(parent_session_id=parent_session_id)
        for subtask in await self.list_subtasks_for_parent(parent_session_id):
            if subtask.status == SubtaskStatus.COMPLETED:
                merged.completed.append(subtask)
            elif subtask.status == SubtaskStatus.FAILED:
                merged.failed.append(subtask)
            else:
                merged.unfinished.append(subtask)
        return merged

    # -----------------------------------------------------------------
    # Artifacts
    # -----------------------------------------------------------------

    async def create_artifact(
        self,
        workflow_id: str,
        artifact_type: ArtifactType,
        payload: dict[str, Any] | None = None,
    ) -> ArtifactRecord:
        """Insert a pending artifact for a workflow."""
        artifact = ArtifactRecord(
            id=generate_id("art"),
            workflow_id=workflow_id,
            artifact_type=artifact_type,
            payload=payload or {},
            created_at=time.time(),
        )
        await self._execute(
            """
            INSERT INTO artifacts (id, workflow_id, artifact_type, status, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.id,
                workflow_id,
                artifact_type.value,
                artifact.status.value,
                json.dumps(artifact.payload),
                artifact.created_at,
            ),
        )
        return artifact

    async def get_latest_artifact(
        self, workflow_id: str, artifact_type: ArtifactType
    ) -> ArtifactRecord | None:
        row = await self._fetch_one(
            """
            SELECT * FROM artifacts WHERE workflow_id = ? AND artifact_type = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (workflow_id, artifact_type.value),
        )
        return self._to_artifact(row) if row is not None else None

    async def update_artifact_status(self, artifact_id: str, status: ArtifactStatus) -> None:
        await self._execute(
            "UPDATE artifacts SET status = ? WHERE id = ?",
            (status.value, artifact_id),
        )

    async def list_approved_artifact_types(self, workflow_id: str) -> set[ArtifactType]:
        rows = await self._fetch_all(
            "SELECT DISTINCT artifact_type FROM artifacts WHERE workflow_id = ? AND status = ?",
            (workflow_id, ArtifactStatus.APPROVED.value),
        )
        return {ArtifactType(row["artifact_type"]) for row in rows}

    # -----------------------------------------------------------------
    # Fan-in results
    # -----------------------------------------------------------------

    async def save_fan_in_result(
        self, parent_session_id: str, workflow_id: str, message: str
    ) -> FanInResult:
        """Persist the merged message for a coordinator session."""
        result = FanInResult(
            parent_session_id=parent_session_id,
            workflow_id=workflow_id,
            message=message,
            created_at=time.time(),
        )
        await self._execute(
            """
            INSERT OR REPLACE INTO fan_in_results
                (parent_session_id, workflow_id, message, delivered, created_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (parent_session_id, workflow_id, message, result.created_at),
        )
        return result

    async def mark_fan_in_delivered(self, parent_session_id: str) -> None:
        await self._execute(
            "UPDATE fan_in_results SET delivered = 1 WHERE parent_session_id = ?",
            (parent_session_id,),
        )

    async def get_fan_in_result(self, parent_session_id: str) -> FanInResult | None:
        row = await self._fetch_one(
            "SELECT * FROM fan_in_results WHERE parent_session_id = ?",
            (parent_session_id,),
        )
        if row is None:
            return None
        data = dict(row)
        data["delivered"] = bool(data["delivered"])
        return FanInResult(**data)
