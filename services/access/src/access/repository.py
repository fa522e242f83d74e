from __future__ import annotations

import sqlite3
import threading
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso

from access.schemas import AuditEvent, Permission, Role, SeedPermission, User

USER_COLUMNS = "id, name, email, email_verified, image, created_at, updated_at"
ROLE_COLUMNS = "id, name, slug, description, created_at, updated_at"
PERMISSION_COLUMNS = "id, name, slug, description, created_at, updated_at"


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class AccessRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    email_verified INTEGER NOT NULL DEFAULT 0,
                    image TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS roles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS permissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS role_permissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
                    permission_id INTEGER NOT NULL
                        REFERENCES permissions(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    UNIQUE (role_id, permission_id)
                );

                CREATE TABLE IF NOT EXISTS role_users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    UNIQUE (role_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    occurred_at TEXT NOT NULL,
                    request_id TEXT,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    action TEXT NOT NULL,
                    permission TEXT,
                    source_ip TEXT,
                    user_agent TEXT,
                    auth_subject TEXT,
                    status TEXT NOT NULL,
                    message TEXT
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def seed_permissions(self, seeds: Sequence[SeedPermission]) -> int:
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.executemany(
                """
                INSERT OR IGNORE INTO permissions (name, slug, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(seed.name, seed.slug, seed.description, now, now) for seed in seeds],
            )
            self.connection.commit()
            return max(cursor.rowcount, 0)

    # users

    def create_user(self, *, name: str, email: str, image: str | None) -> User:
        with self._lock:
            now = now_utc_iso()
            user_id = str(uuid.uuid4())
            self.connection.execute(
                """
                INSERT INTO users (id, name, email, image, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, name, email, image, now, now),
            )
            self.connection.commit()
            return self.get_user_or_raise(user_id)

    def get_user_or_raise(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise KeyError(f"Unknown user_id: {user_id}")
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_user(row)

    def list_users(self) -> list[User]:
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at, id"
            )
            return [self._to_user(row) for row in cursor.fetchall()]

    def update_user(
        self,
        user_id: str,
        *,
        name: str | None = None,
        image: str | None = None,
    ) -> User | None:
        with self._lock:
            assignments = ["updated_at = ?"]
            params: list[Any] = [now_utc_iso()]
            if name is not None:
                assignments.append("name = ?")
                params.append(name)
            if image is not None:
                assignments.append("image = ?")
                params.append(image)
            params.append(user_id)
            self.connection.execute(
                f"UPDATE users SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )
            self.connection.commit()
            return self.get_user(user_id)

    # roles

    def find_role_by_id(self, role_id: int) -> Role | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {ROLE_COLUMNS} FROM roles WHERE id = ?",
                (role_id,),
            ).fetchone()
            return Role(**dict(row)) if row is not None else None

    def find_role_by_slug(self, slug: str) -> Role | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {ROLE_COLUMNS} FROM roles WHERE slug = ?",
                (slug,),
            ).fetchone()
            return Role(**dict(row)) if row is not None else None

    def find_roles_by_ids(self, role_ids: Sequence[int]) -> list[Role]:
        if not role_ids:
            return []
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {ROLE_COLUMNS} FROM roles WHERE id IN ({_placeholders(role_ids)})",
                tuple(role_ids),
            )
            return [Role(**dict(row)) for row in cursor.fetchall()]

    def list_roles(self) -> list[Role]:
        with self._lock:
            cursor = self.connection.execute(f"SELECT {ROLE_COLUMNS} FROM roles ORDER BY id")
            return [Role(**dict(row)) for row in cursor.fetchall()]

    def insert_role(self, *, name: str, slug: str, description: str | None) -> Role:
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO roles (name, slug, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name, slug, description, now, now),
            )
            self.connection.commit()
            role = self.find_role_by_id(int(cursor.lastrowid))
            if role is None:
                raise KeyError(f"Unknown role slug: {slug}")
            return role

    def update_role(
        self,
        role_id: int,
        *,
        name: str | None = None,
        slug: str | None = None,
        description: str | None = None,
    ) -> Role | None:
        with self._lock:
            assignments = ["updated_at = ?"]
            params: list[Any] = [now_utc_iso()]
            for column, value in (("name", name), ("slug", slug), ("description", description)):
                if value is None:
                    continue
                assignments.append(f"{column} = ?")
                params.append(value)
            params.append(role_id)
            self.connection.execute(
                f"UPDATE roles SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )
            self.connection.commit()
            return self.find_role_by_id(role_id)

    def delete_role(self, role_id: int) -> bool:
        with self._lock:
            cursor = self.connection.execute("DELETE FROM roles WHERE id = ?", (role_id,))
            self.connection.commit()
            return cursor.rowcount > 0

    # permissions

    def create_permission(
        self,
        *,
        name: str,
        slug: str,
        description: str | None = None,
    ) -> Permission:
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO permissions (name, slug, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name, slug, description, now, now),
            )
            self.connection.commit()
            permission = self.get_permission(int(cursor.lastrowid))
            if permission is None:
                raise KeyError(f"Unknown permission slug: {slug}")
            return permission

    def get_permission(self, permission_id: int) -> Permission | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {PERMISSION_COLUMNS} FROM permissions WHERE id = ?",
                (permission_id,),
            ).fetchone()
            return Permission(**dict(row)) if row is not None else None

    def find_permission_by_slug(self, slug: str) -> Permission | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {PERMISSION_COLUMNS} FROM permissions WHERE slug = ?",
                (slug,),
            ).fetchone()
            return Permission(**dict(row)) if row is not None else None

    def find_permissions_by_ids(self, permission_ids: Sequence[int]) -> list[Permission]:
        if not permission_ids:
            return []
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT {PERMISSION_COLUMNS}
                FROM permissions
                WHERE id IN ({_placeholders(permission_ids)})
                """,
                tuple(permission_ids),
            )
            return [Permission(**dict(row)) for row in cursor.fetchall()]

    def list_permissions(self) -> list[Permission]:
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {PERMISSION_COLUMNS} FROM permissions ORDER BY id"
            )
            return [Permission(**dict(row)) for row in cursor.fetchall()]

    def update_permission(
        self,
        permission_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Permission | None:
        with self._lock:
            assignments = ["updated_at = ?"]
            params: list[Any] = [now_utc_iso()]
            if name is not None:
                assignments.append("name = ?")
                params.append(name)
            if description is not None:
                assignments.append("description = ?")
                params.append(description)
            params.append(permission_id)
            self.connection.execute(
                f"UPDATE permissions SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )
            self.connection.commit()
            return self.get_permission(permission_id)

    # role <-> permission memberships

    def get_permission_ids_for_role(self, role_id: int) -> set[int]:
        with self._lock:
            cursor = self.connection.execute(
                "SELECT permission_id FROM role_permissions WHERE role_id = ?",
                (role_id,),
            )
            return {int(row["permission_id"]) for row in cursor.fetchall()}

    def add_role_permissions(self, role_id: int, permission_ids: Sequence[int]) -> None:
        if not permission_ids:
            return
        now = now_utc_iso()
        self._apply_batch(
            """
            INSERT OR IGNORE INTO role_permissions (role_id, permission_id, created_at)
            VALUES (?, ?, ?)
            """,
            [(role_id, permission_id, now) for permission_id in permission_ids],
        )

    def remove_role_permissions(self, role_id: int, permission_ids: Sequence[int]) -> None:
        if not permission_ids:
            return
        self._apply_batch(
            "DELETE FROM role_permissions WHERE role_id = ? AND permission_id = ?",
            [(role_id, permission_id) for permission_id in permission_ids],
        )

    def get_role_permissions(self, role_id: int) -> list[Permission]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT p.id, p.name, p.slug, p.description, p.created_at, p.updated_at
                FROM role_permissions rp
                INNER JOIN permissions p ON p.id = rp.permission_id
                WHERE rp.role_id = ?
                ORDER BY p.id
                """,
                (role_id,),
            )
            return [Permission(**dict(row)) for row in cursor.fetchall()]

    def list_roles_for_permission(self, permission_id: int) -> list[Role]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT r.id, r.name, r.slug, r.description, r.created_at, r.updated_at
                FROM role_permissions rp
                INNER JOIN roles r ON r.id = rp.role_id
                WHERE rp.permission_id = ?
                ORDER BY r.id
                """,
                (permission_id,),
            )
            return [Role(**dict(row)) for row in cursor.fetchall()]

    # user <-> role memberships

    def get_role_ids_for_user(self, user_id: str) -> set[int]:
        with self._lock:
            cursor = self.connection.execute(
                "SELECT role_id FROM role_users WHERE user_id = ?",
                (user_id,),
            )
            return {int(row["role_id"]) for row in cursor.fetchall()}

    def add_user_roles(self, user_id: str, role_ids: Sequence[int]) -> None:
        if not role_ids:
            return
        now = now_utc_iso()
        self._apply_batch(
            """
            INSERT OR IGNORE INTO role_users (role_id, user_id, created_at)
            VALUES (?, ?, ?)
            """,
            [(role_id, user_id, now) for role_id in role_ids],
        )

    def remove_user_roles(self, user_id: str, role_ids: Sequence[int]) -> None:
        if not role_ids:
            return
        self._apply_batch(
            "DELETE FROM role_users WHERE user_id = ? AND role_id = ?",
            [(user_id, role_id) for role_id in role_ids],
        )

    def get_user_roles(self, user_id: str) -> list[Role]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT r.id, r.name, r.slug, r.description, r.created_at, r.updated_at
                FROM role_users ru
                INNER JOIN roles r ON r.id = ru.role_id
                WHERE ru.user_id = ?
                ORDER BY r.id
                """,
                (user_id,),
            )
            return [Role(**dict(row)) for row in cursor.fetchall()]

    def list_users_for_role(self, role_id: int) -> list[User]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT u.id, u.name, u.email, u.email_verified, u.image,
                       u.created_at, u.updated_at
                FROM role_users ru
                INNER JOIN users u ON u.id = ru.user_id
                WHERE ru.role_id = ?
                ORDER BY u.created_at, u.id
                """,
                (role_id,),
            )
            return [self._to_user(row) for row in cursor.fetchall()]

    # reachability through roles

    def get_user_permissions(self, user_id: str) -> list[Permission]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT DISTINCT p.id, p.name, p.slug, p.description, p.created_at, p.updated_at
                FROM role_users ru
                INNER JOIN role_permissions rp ON rp.role_id = ru.role_id
                INNER JOIN permissions p ON p.id = rp.permission_id
                WHERE ru.user_id = ?
                ORDER BY p.id
                """,
                (user_id,),
            )
            return [Permission(**dict(row)) for row in cursor.fetchall()]

    def get_user_role_permissions(self, user_id: str, role_slug: str) -> list[Permission]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT p.id, p.name, p.slug, p.description, p.created_at, p.updated_at
                FROM role_users ru
                INNER JOIN roles r ON r.id = ru.role_id
                INNER JOIN role_permissions rp ON rp.role_id = r.id
                INNER JOIN permissions p ON p.id = rp.permission_id
                WHERE ru.user_id = ? AND r.slug = ?
                ORDER BY p.id
                """,
                (user_id, role_slug),
            )
            return [Permission(**dict(row)) for row in cursor.fetchall()]

    def has_permissions(self, user_id: str, slugs: Sequence[str]) -> bool:
        if not slugs:
            return False
        with self._lock:
            row = self.connection.execute(
                f"""
                SELECT 1
                FROM role_users ru
                INNER JOIN role_permissions rp ON rp.role_id = ru.role_id
                INNER JOIN permissions p ON p.id = rp.permission_id
                WHERE ru.user_id = ? AND p.slug IN ({_placeholders(slugs)})
                LIMIT 1
                """,
                (user_id, *slugs),
            ).fetchone()
            return row is not None

    # audit

    def record_audit_event(
        self,
        *,
        request_id: str | None,
        method: str,
        path: str,
        action: str,
        permission: str | None,
        source_ip: str | None,
        user_agent: str | None,
        auth_subject: str | None,
        status: str,
        message: str | None,
    ) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                INSERT INTO audit_events (
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    permission,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    now_utc_iso(),
                    request_id,
                    method,
                    path,
                    action,
                    permission,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message,
                ),
            )
            self.connection.commit()
            return int(cursor.lastrowid)

    def list_audit_events(
        self,
        *,
        limit: int,
        action: str | None,
        status: str | None,
    ) -> list[AuditEvent]:
        with self._lock:
            query = """
                SELECT
                    id AS event_id,
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    permission,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message
                FROM audit_events
            """
            params: list[Any] = []
            filters: list[str] = []
            if action:
                filters.append("action = ?")
                params.append(action)
            if status:
                filters.append("status = ?")
                params.append(status)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [AuditEvent(**dict(row)) for row in cursor.fetchall()]

    def _apply_batch(self, statement: str, rows: list[tuple[Any, ...]]) -> None:
        # One commit per batch; a failed batch leaves nothing behind.
        with self._lock:
            try:
                self.connection.executemany(statement, rows)
            except sqlite3.Error:
                self.connection.rollback()
                raise
            self.connection.commit()

    def _to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            email_verified=bool(row["email_verified"]),
            image=row["image"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
