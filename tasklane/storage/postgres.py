from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from tasklane.logging import get_logger
from tasklane.storage.errors import ConstraintViolation
from tasklane.storage.models import (
    NewTask,
    Tag,
    TagSummary,
    Task,
    TaskQuery,
    User,
    resolve_completed_at,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = ("users", "tasks", "tags", "task_tags")
_UPDATABLE_TASK_FIELDS = ("title", "description", "status", "priority", "due_date")
_TASK_COLUMNS = (
    "id, user_id, title, description, status, priority, due_date, completed_at, "
    "ai_summary, ai_sentiment, created_at, updated_at"
)
_TASK_ORDER = (
    "ORDER BY CASE priority WHEN 'critical' THEN 0 WHEN 'high' THEN 1 "
    "WHEN 'medium' THEN 2 ELSE 3 END, due_date ASC NULLS LAST, created_at DESC, id DESC"
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        password_hash=row["password_hash"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _tag_from_row(row: Dict[str, Any]) -> Tag:
    return Tag(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        color=row["color"],
        created_at=row["created_at"],
    )


def _task_from_row(row: Dict[str, Any], tags: Optional[List[TagSummary]] = None) -> Task:
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        due_date=row["due_date"],
        completed_at=row["completed_at"],
        ai_summary=row["ai_summary"],
        ai_sentiment=row["ai_sentiment"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        tags=tags or [],
    )


class PostgresStore:
    """Postgres-backed store of record built on an async connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    def _connect(self):
        return self.pool.connection()

    async def open(self, *, verify_schema: bool = True) -> None:
        await self.pool.open()
        if verify_schema:
            await self._verify_required_schema()

    async def close(self) -> None:
        await self.pool.close()

    async def ping(self) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        return bool(row and row.get("ok") == 1)

    async def apply_schema(self, path: Path = SCHEMA_PATH) -> None:
        """Create tables and indexes from ``schema.sql`` if they are missing."""

        async with self._connect() as conn:
            await conn.execute(path.read_text())

    async def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        async with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/init_db.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users -----------------------------------------------------------------
    async def create_user(self, email: str, name: str, password_hash: str) -> User:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO users (email, name, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING id, email, name, password_hash, created_at, updated_at
                    """,
                    (email, name, password_hash),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM users WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,)
            )
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    # tasks -----------------------------------------------------------------
    async def _tags_for_tasks(self, conn, task_ids: Iterable[int]) -> Dict[int, List[TagSummary]]:
        ids = list(task_ids)
        grouped: Dict[int, List[TagSummary]] = {task_id: [] for task_id in ids}
        if not ids:
            return grouped
        cur = await conn.execute(
            """
            SELECT tt.task_id, t.id, t.name, t.color
            FROM task_tags tt
            JOIN tags t ON t.id = tt.tag_id
            WHERE tt.task_id = ANY(%s)
            ORDER BY t.name, t.id
            """,
            (ids,),
        )
        for row in await cur.fetchall():
            grouped[row["task_id"]].append(
                TagSummary(id=row["id"], name=row["name"], color=row["color"])
            )
        return grouped

    async def _replace_task_tags(self, conn, user_id: int, task_id: int, tag_ids: List[int]) -> None:
        await conn.execute("DELETE FROM task_tags WHERE task_id = %s", (task_id,))
        if tag_ids:
            # only the caller's own tags may be linked
            await conn.execute(
                """
                INSERT INTO task_tags (task_id, tag_id)
                SELECT %s, id FROM tags WHERE user_id = %s AND id = ANY(%s)
                ON CONFLICT DO NOTHING
                """,
                (task_id, user_id, list(tag_ids)),
            )

    async def list_tasks(self, user_id: int, query: TaskQuery) -> Tuple[List[Task], int]:
        conditions = ["user_id = %s"]
        params: List[Any] = [user_id]
        if query.status:
            conditions.append("status = %s")
            params.append(query.status)
        if query.priority:
            conditions.append("priority = %s")
            params.append(query.priority)
        if query.due_before:
            conditions.append("due_date <= %s")
            params.append(query.due_before)
        if query.search:
            conditions.append("title ILIKE %s")
            params.append(f"%{_escape_like(query.search)}%")
        where = " AND ".join(conditions)

        async with self._connect() as conn:
            cur = await conn.execute(f"SELECT count(*) AS total FROM tasks WHERE {where}", params)
            total_row = await cur.fetchone()
            cur = await conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE {where} {_TASK_ORDER} LIMIT %s OFFSET %s",
                [*params, query.limit, query.offset],
            )
            rows = await cur.fetchall()
            tags = await self._tags_for_tasks(conn, (row["id"] for row in rows))
        tasks = [_task_from_row(row, tags.get(row["id"])) for row in rows]
        return tasks, int(total_row["total"]) if total_row else 0

    async def get_task(self, user_id: int, task_id: int) -> Optional[Task]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = %s AND user_id = %s",
                (task_id, user_id),
            )
            row = await cur.fetchone()
            if not row:
                return None
            tags = await self._tags_for_tasks(conn, [task_id])
        return _task_from_row(row, tags.get(task_id))

    async def create_task(self, user_id: int, new_task: NewTask) -> Task:
        now = utcnow()
        async with self._connect() as conn:
            cur = await conn.execute(
                f"""
                INSERT INTO tasks (user_id, title, description, status, priority, due_date, completed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {_TASK_COLUMNS}
                """,
                (
                    user_id,
                    new_task.title,
                    new_task.description,
                    new_task.status,
                    new_task.priority,
                    new_task.due_date,
                    now if new_task.status == "done" else None,
                ),
            )
            row = await cur.fetchone()
            if new_task.tag_ids:
                await self._replace_task_tags(conn, user_id, row["id"], new_task.tag_ids)
            tags = await self._tags_for_tasks(conn, [row["id"]])
        return _task_from_row(row, tags.get(row["id"]))

    async def update_task(
        self,
        user_id: int,
        task_id: int,
        changes: Dict[str, Any],
        tag_ids: Optional[List[int]] = None,
    ) -> Optional[Task]:
        unknown = set(changes) - set(_UPDATABLE_TASK_FIELDS)
        if unknown:
            raise ValueError(f"unsupported task fields: {sorted(unknown)}")
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT status, completed_at FROM tasks WHERE id = %s AND user_id = %s FOR UPDATE",
                (task_id, user_id),
            )
            current = await cur.fetchone()
            if not current:
                return None
            now = utcnow()
            values = {column: changes[column] for column in _UPDATABLE_TASK_FIELDS if column in changes}
            values["completed_at"] = resolve_completed_at(
                current["status"], changes.get("status"), current["completed_at"], now
            )
            values["updated_at"] = now
            assignments = sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
            )
            cur = await conn.execute(
                sql.SQL("UPDATE tasks SET {} WHERE id = %s AND user_id = %s RETURNING ").format(assignments)
                + sql.SQL(_TASK_COLUMNS),
                [*values.values(), task_id, user_id],
            )
            row = await cur.fetchone()
            if tag_ids is not None:
                await self._replace_task_tags(conn, user_id, task_id, tag_ids)
            tags = await self._tags_for_tasks(conn, [task_id])
        return _task_from_row(row, tags.get(task_id))

    async def delete_task(self, user_id: int, task_id: int) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM tasks WHERE id = %s AND user_id = %s", (task_id, user_id)
            )
            return cur.rowcount > 0

    async def update_ai_fields(
        self, user_id: int, task_id: int, summary: str, sentiment: str
    ) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE tasks SET ai_summary = %s, ai_sentiment = %s, updated_at = now()
                WHERE id = %s AND user_id = %s
                """,
                (summary, sentiment, task_id, user_id),
            )
            return cur.rowcount > 0

    # tags ------------------------------------------------------------------
    async def list_tags(self, user_id: int) -> List[Tag]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM tags WHERE user_id = %s ORDER BY name, id", (user_id,)
            )
            rows = await cur.fetchall()
        return [_tag_from_row(row) for row in rows]

    async def create_tag(self, user_id: int, name: str, color: str) -> Tag:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    "INSERT INTO tags (user_id, name, color) VALUES (%s, %s, %s) RETURNING *",
                    (user_id, name, color),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tag name already exists", {"field": "name"})
        return _tag_from_row(row)

    async def delete_tag(self, user_id: int, tag_id: int) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM tags WHERE id = %s AND user_id = %s", (tag_id, user_id)
            )
            return cur.rowcount > 0
