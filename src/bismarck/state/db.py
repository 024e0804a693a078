"""SQLite database operations for Bismarck state management."""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional

from bismarck.errors import PersistenceError

from .models import (
    AssignmentStatus,
    BranchStrategy,
    CriticStatus,
    GitSummary,
    Plan,
    PlanStatus,
    PlanWorktree,
    RalphLoopState,
    Task,
    TaskAssignment,
    TeamMode,
    WorktreeStatus,
)

if TYPE_CHECKING:
    from bismarck.events import EngineEvent


class BismarckDB:
    """Manages the SQLite database holding plans, tasks, loops and events.

    Writes are durable before they return: callers report a transition only
    after the matching write call has completed. Any sqlite failure during a
    write surfaces as PersistenceError.
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection and ensure schema exists.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._transaction_depth = 0
        self._closed = False
        self._init_schema()

    def _init_schema(self):
        """Create database schema if it doesn't exist."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS plans (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                repo_path TEXT NOT NULL,
                status TEXT NOT NULL,
                team_mode TEXT NOT NULL,
                branch_strategy TEXT NOT NULL,
                reference_agent_id TEXT,
                max_parallel_agents INTEGER,
                base_branch TEXT,
                feature_branch TEXT,
                critic_criteria TEXT,
                discussion_completed INTEGER NOT NULL DEFAULT 0,
                git_summary TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Tasks are immutable once a plan executes; position keeps input order
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                plan_id TEXT NOT NULL,
                id TEXT NOT NULL,
                position INTEGER NOT NULL,
                subject TEXT NOT NULL,
                description TEXT NOT NULL,
                blocked_by TEXT NOT NULL,
                PRIMARY KEY (plan_id, id),
                FOREIGN KEY (plan_id) REFERENCES plans(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS assignments (
                id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                worktree_path TEXT NOT NULL,
                status TEXT NOT NULL,
                assigned_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error TEXT,
                FOREIGN KEY (plan_id) REFERENCES plans(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS worktrees (
                id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                path TEXT NOT NULL,
                branch TEXT NOT NULL,
                base_branch TEXT NOT NULL,
                status TEXT NOT NULL,
                critic_status TEXT NOT NULL,
                critic_iteration INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                cleaned_at TEXT,
                commits TEXT NOT NULL,
                FOREIGN KEY (plan_id) REFERENCES plans(id) ON DELETE CASCADE
            )
        """)

        # Loops are stored as one JSON document; they are small and read whole
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loops (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                started_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subject_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                task_id TEXT,
                status TEXT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                details TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_subject ON events(subject_id, id)"
        )

        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Context manager for database transactions.

        Usage:
            with db.transaction():
                db.save_worktree(worktree)
                db.save_assignment(assignment)

        If an exception occurs, the transaction is rolled back.
        Otherwise, it is committed when the context exits.

        Supports nested transactions using savepoints. sqlite failures
        are raised as PersistenceError.
        """
        self._transaction_depth += 1
        savepoint_name = f"sp_{self._transaction_depth}"

        try:
            if self._transaction_depth == 1:
                self.conn.execute("BEGIN")
            else:
                self.conn.execute(f"SAVEPOINT {savepoint_name}")

            try:
                yield
                if self._transaction_depth == 1:
                    self.conn.commit()
                else:
                    self.conn.execute(f"RELEASE SAVEPOINT {savepoint_name}")
            except Exception:
                if self._transaction_depth == 1:
                    self.conn.rollback()
                else:
                    self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint_name}")
                raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Database transaction failed: {e}", original_error=e) from e
        finally:
            self._transaction_depth -= 1

    def _should_auto_commit(self) -> bool:
        """Returns False if we're inside a transaction context."""
        return self._transaction_depth == 0

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a write, committing unless inside a transaction."""
        try:
            cursor = self.conn.execute(sql, params)
            if self._should_auto_commit():
                self.conn.commit()
            return cursor
        except sqlite3.Error as e:
            raise PersistenceError(f"Database write failed: {e}", original_error=e) from e

    # Row conversion

    def _row_to_plan(self, row: sqlite3.Row) -> Plan:
        return Plan(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            repo_path=row["repo_path"],
            status=PlanStatus(row["status"]),
            team_mode=TeamMode(row["team_mode"]),
            branch_strategy=BranchStrategy(row["branch_strategy"]),
            reference_agent_id=row["reference_agent_id"],
            max_parallel_agents=row["max_parallel_agents"],
            base_branch=row["base_branch"],
            feature_branch=row["feature_branch"],
            critic_criteria=row["critic_criteria"],
            discussion_completed=bool(row["discussion_completed"]),
            worktrees=self.get_worktrees(row["id"]),
            git_summary=GitSummary.from_dict(json.loads(row["git_summary"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            subject=row["subject"],
            description=row["description"],
            blocked_by=frozenset(json.loads(row["blocked_by"])),
        )

    def _row_to_assignment(self, row: sqlite3.Row) -> TaskAssignment:
        return TaskAssignment(
            id=row["id"],
            plan_id=row["plan_id"],
            task_id=row["task_id"],
            agent_id=row["agent_id"],
            worktree_path=row["worktree_path"],
            status=AssignmentStatus(row["status"]),
            assigned_at=datetime.fromisoformat(row["assigned_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            error=row["error"],
        )

    def _row_to_worktree(self, row: sqlite3.Row) -> PlanWorktree:
        return PlanWorktree(
            id=row["id"],
            plan_id=row["plan_id"],
            task_id=row["task_id"],
            path=row["path"],
            branch=row["branch"],
            base_branch=row["base_branch"],
            status=WorktreeStatus(row["status"]),
            critic_status=CriticStatus(row["critic_status"]),
            critic_iteration=row["critic_iteration"],
            created_at=datetime.fromisoformat(row["created_at"]),
            cleaned_at=datetime.fromisoformat(row["cleaned_at"]) if row["cleaned_at"] else None,
            commits=json.loads(row["commits"]),
        )

    # Plan operations

    def create_plan(self, plan: Plan, tasks: List[Task]) -> Plan:
        """Create a plan together with its immutable task list."""
        data = plan.to_dict()
        with self.transaction():
            self._write("""
                INSERT INTO plans (id, title, description, repo_path, status, team_mode,
                    branch_strategy, reference_agent_id, max_parallel_agents, base_branch,
                    feature_branch, critic_criteria, discussion_completed, git_summary,
                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                data["id"],
                data["title"],
                data["description"],
                data["repo_path"],
                data["status"],
                data["team_mode"],
                data["branch_strategy"],
                data["reference_agent_id"],
                data["max_parallel_agents"],
                data["base_branch"],
                data["feature_branch"],
                data["critic_criteria"],
                int(data["discussion_completed"]),
                json.dumps(data["git_summary"]),
                data["created_at"],
                data["updated_at"],
            ))
            for position, task in enumerate(tasks):
                self._write("""
                    INSERT INTO tasks (plan_id, id, position, subject, description, blocked_by)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    plan.id,
                    task.id,
                    position,
                    task.subject,
                    task.description,
                    json.dumps(sorted(task.blocked_by)),
                ))
        return plan

    def update_plan(self, plan: Plan) -> Plan:
        """Persist every mutable plan field (worktrees are saved separately)."""
        plan.updated_at = datetime.now()
        data = plan.to_dict()
        self._write("""
            UPDATE plans
            SET title = ?, description = ?, status = ?, team_mode = ?, branch_strategy = ?,
                reference_agent_id = ?, max_parallel_agents = ?, base_branch = ?,
                feature_branch = ?, critic_criteria = ?, discussion_completed = ?,
                git_summary = ?, updated_at = ?
            WHERE id = ?
        """, (
            data["title"],
            data["description"],
            data["status"],
            data["team_mode"],
            data["branch_strategy"],
            data["reference_agent_id"],
            data["max_parallel_agents"],
            data["base_branch"],
            data["feature_branch"],
            data["critic_criteria"],
            int(data["discussion_completed"]),
            json.dumps(data["git_summary"]),
            data["updated_at"],
            plan.id,
        ))
        return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Get a plan by ID, with its worktrees."""
        row = self.conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
        if row:
            return self._row_to_plan(row)
        return None

    def list_plans(self) -> List[Plan]:
        """List all plans, newest first."""
        rows = self.conn.execute("SELECT * FROM plans ORDER BY created_at DESC").fetchall()
        return [self._row_to_plan(row) for row in rows]

    def delete_plan(self, plan_id: str) -> None:
        """Delete a plan, cascading to tasks, assignments, worktrees and events."""
        with self.transaction():
            self._write("DELETE FROM events WHERE subject_id = ?", (plan_id,))
            self._write("DELETE FROM assignments WHERE plan_id = ?", (plan_id,))
            self._write("DELETE FROM worktrees WHERE plan_id = ?", (plan_id,))
            self._write("DELETE FROM tasks WHERE plan_id = ?", (plan_id,))
            self._write("DELETE FROM plans WHERE id = ?", (plan_id,))

    # Task operations

    def get_tasks(self, plan_id: str) -> List[Task]:
        """Get a plan's tasks in their original order."""
        rows = self.conn.execute(
            "SELECT * FROM tasks WHERE plan_id = ? ORDER BY position", (plan_id,)
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    # Assignment operations

    def save_assignment(self, assignment: TaskAssignment) -> TaskAssignment:
        """Insert or update an assignment."""
        data = assignment.to_dict()
        self._write("""
            INSERT OR REPLACE INTO assignments (id, plan_id, task_id, agent_id, worktree_path,
                status, assigned_at, started_at, completed_at, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            data["id"],
            data["plan_id"],
            data["task_id"],
            data["agent_id"],
            data["worktree_path"],
            data["status"],
            data["assigned_at"],
            data["started_at"],
            data["completed_at"],
            data["error"],
        ))
        return assignment

    def get_assignments(self, plan_id: str) -> List[TaskAssignment]:
        rows = self.conn.execute(
            "SELECT * FROM assignments WHERE plan_id = ? ORDER BY assigned_at", (plan_id,)
        ).fetchall()
        return [self._row_to_assignment(row) for row in rows]

    def delete_assignments(self, plan_id: str) -> None:
        self._write("DELETE FROM assignments WHERE plan_id = ?", (plan_id,))

    # Worktree operations

    def save_worktree(self, worktree: PlanWorktree) -> PlanWorktree:
        """Insert or update a plan worktree."""
        data = worktree.to_dict()
        self._write("""
            INSERT OR REPLACE INTO worktrees (id, plan_id, task_id, path, branch, base_branch,
                status, critic_status, critic_iteration, created_at, cleaned_at, commits)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            data["id"],
            data["plan_id"],
            data["task_id"],
            data["path"],
            data["branch"],
            data["base_branch"],
            data["status"],
            data["critic_status"],
            data["critic_iteration"],
            data["created_at"],
            data["cleaned_at"],
            json.dumps(data["commits"]),
        ))
        return worktree

    def get_worktrees(self, plan_id: str) -> List[PlanWorktree]:
        rows = self.conn.execute(
            "SELECT * FROM worktrees WHERE plan_id = ? ORDER BY created_at", (plan_id,)
        ).fetchall()
        return [self._row_to_worktree(row) for row in rows]

    def delete_worktrees(self, plan_id: str) -> None:
        self._write("DELETE FROM worktrees WHERE plan_id = ?", (plan_id,))

    # Loop operations

    def save_loop(self, state: RalphLoopState) -> RalphLoopState:
        """Insert or update a loop's full state."""
        self._write("""
            INSERT OR REPLACE INTO loops (id, status, data, started_at)
            VALUES (?, ?, ?, ?)
        """, (
            state.id,
            state.status.value,
            json.dumps(state.to_dict()),
            state.started_at.isoformat(),
        ))
        return state

    def get_loop(self, loop_id: str) -> Optional[RalphLoopState]:
        row = self.conn.execute("SELECT data FROM loops WHERE id = ?", (loop_id,)).fetchone()
        if row:
            return RalphLoopState.from_dict(json.loads(row["data"]))
        return None

    def list_loops(self) -> List[RalphLoopState]:
        rows = self.conn.execute("SELECT data FROM loops ORDER BY started_at DESC").fetchall()
        return [RalphLoopState.from_dict(json.loads(row["data"])) for row in rows]

    def delete_loop(self, loop_id: str) -> None:
        with self.transaction():
            self._write("DELETE FROM events WHERE subject_id = ?", (loop_id,))
            self._write("DELETE FROM loops WHERE id = ?", (loop_id,))

    # Event operations

    def create_event(self, event: "EngineEvent") -> int:
        """Append an event to the replay log. Returns its sequence number."""
        cursor = self._write("""
            INSERT INTO events (subject_id, kind, task_id, status, level, message, details, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.subject_id,
            event.kind,
            event.task_id,
            event.status,
            event.level,
            event.message,
            json.dumps(event.details),
            event.timestamp.isoformat(),
        ))
        return cursor.lastrowid

    def get_events(self, subject_id: str, limit: Optional[int] = None) -> List[dict]:
        """Get persisted events for a plan or loop, oldest first."""
        rows = self.conn.execute(
            "SELECT * FROM events WHERE subject_id = ? ORDER BY id", (subject_id,)
        ).fetchall()
        if limit is not None:
            rows = rows[-limit:]
        return [
            {
                "sequence": row["id"],
                "subject_id": row["subject_id"],
                "kind": row["kind"],
                "task_id": row["task_id"],
                "status": row["status"],
                "level": row["level"],
                "message": row["message"],
                "details": json.loads(row["details"]),
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]

    def close(self):
        """
        Close database connection safely.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if self._closed:
            return

        try:
            self.conn.close()
        except sqlite3.Error:
            pass
        finally:
            self._closed = True
