from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from apitemplate.logging import get_logger
from apitemplate.storage.errors import ConstraintViolation
from apitemplate.storage.models import Permission, Role, User

REQUIRED_TABLES = [
    "app_user",
    "role",
    "permission",
    "role_permission",
    "user_role",
]


class PostgresStore:
    """Postgres-backed repository for users, roles and permissions."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the tables from sql/schema.sql exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(id=int(row["id"]), name=row["name"], created_at=row["created_at"])

    def _role_from_row(self, conn, row: Dict[str, Any]) -> Role:
        perm_rows = conn.execute(
            """
            SELECT p.id, p.name, p.created_at
            FROM permission p
            JOIN role_permission rp ON rp.permission_id = p.id
            WHERE rp.role_id = %s
            ORDER BY p.id
            """,
            (row["id"],),
        ).fetchall()
        return Role(
            id=int(row["id"]),
            name=row["name"],
            permissions=[self._permission_from_row(r) for r in perm_rows],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _user_from_row(self, conn, row: Dict[str, Any]) -> User:
        role_rows = conn.execute(
            """
            SELECT r.id, r.name, r.created_at, r.updated_at
            FROM role r
            JOIN user_role ur ON ur.role_id = r.id
            WHERE ur.user_id = %s
            ORDER BY r.id
            """,
            (row["id"],),
        ).fetchall()
        return User(
            id=int(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            reset_token=row.get("reset_token"),
            reset_token_expires_at=row.get("reset_token_expires_at"),
            roles=[self._role_from_row(conn, r) for r in role_rows],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", params).fetchone()
            if not row:
                return None
            return self._user_from_row(conn, row)

    # users

    def create_user(self, email: str, name: str, password_hash: str) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, name, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (email, name, password_hash),
                ).fetchone()
                return self._user_from_row(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = lower(%s)", (email,))

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_user("reset_token = %s", (token,))

    def list_users(self, *, offset: int = 0, limit: int = 10) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY id LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
            return [self._user_from_row(conn, row) for row in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    def update_user(
        self,
        user_id: int,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = COALESCE(%s, email),
                        name = COALESCE(%s, name),
                        password_hash = COALESCE(%s, password_hash),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (email, name, password_hash, user_id),
                ).fetchone()
                if not row:
                    return None
                return self._user_from_row(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def save_reset_token(self, user_id: int, token: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET reset_token = %s, reset_token_expires_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (token, expires_at, user_id),
            )

    def update_password(self, user_id: int, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, reset_token = NULL,
                    reset_token_expires_at = NULL, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def set_user_roles(self, user_id: int, role_ids: Iterable[int]) -> Optional[User]:
        ids = list(dict.fromkeys(role_ids))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not row:
                    return None
                conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
                for role_id in ids:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)",
                        (user_id, role_id),
                    )
                return self._user_from_row(conn, row)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown role", {"field": "role_ids", "ids": ids})

    # roles

    def create_role(self, name: str, permission_ids: Iterable[int] = ()) -> Role:
        ids = list(dict.fromkeys(permission_ids))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO role (name) VALUES (%s) RETURNING *", (name,)
                ).fetchone()
                for permission_id in ids:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (row["id"], permission_id),
                    )
                return self._role_from_row(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown permission", {"field": "permission_ids", "ids": ids}
            )

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
            if not row:
                return None
            return self._role_from_row(conn, row)

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY id").fetchall()
            return [self._role_from_row(conn, row) for row in rows]

    def update_role(self, role_id: int, name: str) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE role SET name = %s, updated_at = now() WHERE id = %s RETURNING *",
                    (name, role_id),
                ).fetchone()
                if not row:
                    return None
                return self._role_from_row(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})

    def delete_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    def set_role_permissions(
        self, role_id: int, permission_ids: Iterable[int]
    ) -> Optional[Role]:
        ids = list(dict.fromkeys(permission_ids))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE role SET updated_at = now() WHERE id = %s RETURNING *",
                    (role_id,),
                ).fetchone()
                if not row:
                    return None
                conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
                for permission_id in ids:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, permission_id),
                    )
                return self._role_from_row(conn, row)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown permission", {"field": "permission_ids", "ids": ids}
            )

    # permissions

    def create_permission(self, name: str) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO permission (name) VALUES (%s) RETURNING *", (name,)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return self._permission_from_row(row)

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY id").fetchall()
        return [self._permission_from_row(row) for row in rows]

    def delete_permission(self, permission_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM permission WHERE id = %s", (permission_id,))
            return cur.rowcount > 0


__all__ = ["PostgresStore", "REQUIRED_TABLES"]
