from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from yishan_auth.logging import get_logger
from yishan_auth.storage.errors import ConstraintViolation
from yishan_auth.storage.models import (
    LoginEvent,
    Menu,
    MenuStatus,
    MenuType,
    Role,
    TokenRecord,
    TokenStats,
    User,
    UserStatus,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sys_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        real_name TEXT,
        status SMALLINT NOT NULL DEFAULT 1,
        last_login_time TIMESTAMPTZ,
        last_login_ip TEXT,
        login_count INTEGER NOT NULL DEFAULT 0,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sys_user_credential (
        user_id BIGINT PRIMARY KEY REFERENCES sys_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sys_role (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        code TEXT NOT NULL UNIQUE,
        status SMALLINT NOT NULL DEFAULT 1,
        is_system_default BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sys_user_role (
        user_id BIGINT NOT NULL REFERENCES sys_user(id),
        role_id BIGINT NOT NULL REFERENCES sys_role(id),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sys_menu (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        type SMALLINT NOT NULL DEFAULT 1,
        path TEXT,
        parent_id BIGINT,
        status SMALLINT NOT NULL DEFAULT 1,
        sort_order INTEGER NOT NULL DEFAULT 0,
        icon TEXT,
        component TEXT,
        hide_in_menu BOOLEAN NOT NULL DEFAULT false,
        is_external_link BOOLEAN NOT NULL DEFAULT false,
        perm TEXT,
        keep_alive BOOLEAN NOT NULL DEFAULT false
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sys_role_menu (
        role_id BIGINT NOT NULL REFERENCES sys_role(id),
        menu_id BIGINT NOT NULL,
        PRIMARY KEY (role_id, menu_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sys_user_token (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES sys_user(id),
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        access_token_expires_at TIMESTAMPTZ NOT NULL,
        refresh_token_expires_at TIMESTAMPTZ NOT NULL,
        token_type TEXT NOT NULL DEFAULT 'Bearer',
        client_ip TEXT,
        user_agent TEXT,
        is_revoked BOOLEAN NOT NULL DEFAULT false,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sys_user_token_user_idx ON sys_user_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS sys_login_log (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT,
        username TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        message TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

_REQUIRED_TABLES = [
    "sys_user",
    "sys_user_credential",
    "sys_role",
    "sys_user_role",
    "sys_menu",
    "sys_role_menu",
    "sys_user_token",
    "sys_login_log",
]


class PostgresStore:
    """Postgres-backed credential, menu and token store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()
        self._ensure_default_roles()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure every auth table exists before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    def _ensure_default_roles(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sys_role (name, code, is_system_default)
                VALUES ('Super Admin', 'superAdmin', true), ('Admin', 'admin', true)
                ON CONFLICT (code) DO NOTHING
                """
            )

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row.get("email"),
            real_name=row.get("real_name"),
            status=UserStatus(row.get("status", UserStatus.ENABLED)),
            last_login_time=row.get("last_login_time"),
            last_login_ip=row.get("last_login_ip"),
            login_count=row.get("login_count") or 0,
            failed_login_count=row.get("failed_login_count") or 0,
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            id=int(row["id"]),
            name=row["name"],
            code=row["code"],
            status=row.get("status", 1),
            is_system_default=row.get("is_system_default", False),
            created_at=row["created_at"],
        )

    @staticmethod
    def _menu_from_row(row: dict) -> Menu:
        return Menu(
            id=int(row["id"]),
            name=row["name"],
            type=MenuType(row.get("type", MenuType.PAGE)),
            path=row.get("path"),
            parent_id=row.get("parent_id") or None,
            status=MenuStatus(row.get("status", MenuStatus.ENABLED)),
            sort_order=row.get("sort_order") or 0,
            icon=row.get("icon"),
            component=row.get("component"),
            hide_in_menu=row.get("hide_in_menu", False),
            is_external_link=row.get("is_external_link", False),
            perm=row.get("perm"),
            keep_alive=row.get("keep_alive", False),
        )

    @staticmethod
    def _token_from_row(row: dict) -> TokenRecord:
        return TokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            access_token_expires_at=row["access_token_expires_at"],
            refresh_token_expires_at=row["refresh_token_expires_at"],
            token_type=row.get("token_type") or "Bearer",
            client_ip=row.get("client_ip"),
            user_agent=row.get("user_agent"),
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        real_name: Optional[str] = None,
        status: UserStatus = UserStatus.ENABLED,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sys_user (username, email, real_name, status)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email, real_name, int(status)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username or email already exists", {"field": "username"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sys_user WHERE id = %s AND deleted_at IS NULL", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve a login identifier against username first, then email."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sys_user
                WHERE (username = %s OR email = %s) AND deleted_at IS NULL
                ORDER BY (username = %s) DESC
                LIMIT 1
                """,
                (identifier, identifier, identifier),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, user_id: int, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sys_user SET status = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (int(status), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login_success(
        self, user_id: int, login_time: datetime, client_ip: Optional[str]
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sys_user
                SET last_login_time = %s,
                    last_login_ip = %s,
                    login_count = login_count + 1,
                    failed_login_count = 0,
                    updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (login_time, client_ip, login_time, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login_failure(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sys_user
                SET failed_login_count = failed_login_count + 1, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING failed_login_count
                """,
                (user_id,),
            ).fetchone()
        return int(row["failed_login_count"]) if row else 0

    def soft_delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE sys_user SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL RETURNING id",
                (user_id,),
            ).fetchone()
        return row is not None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sys_user_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM sys_user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def record_login_event(
        self,
        username: str,
        success: bool,
        message: str,
        *,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO sys_login_log (user_id, username, success, message, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, username, success, message, ip_address, user_agent),
            ).fetchone()
        return LoginEvent(
            id=int(row["id"]),
            username=row["username"],
            success=row["success"],
            message=row["message"],
            user_id=row.get("user_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # -- roles & menus ---------------------------------------------------

    def create_role(
        self,
        name: str,
        code: str,
        *,
        status: int = 1,
        is_system_default: bool = False,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sys_role (name, code, status, is_system_default)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, code, status, is_system_default),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role code already exists", {"field": "code"})
        return self._role_from_row(row)

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sys_role WHERE code = %s", (code,)).fetchone()
        return self._role_from_row(row) if row else None

    def assign_user_roles(self, user_id: int, role_ids: Sequence[int]) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM sys_user_role WHERE user_id = %s", (user_id,))
                for role_id in dict.fromkeys(role_ids):
                    conn.execute(
                        "INSERT INTO sys_user_role (user_id, role_id) VALUES (%s, %s)",
                        (user_id, role_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role_ids": list(role_ids)}
            )

    def get_user_role_ids(self, user_id: int) -> List[int]:
        """Return ids of the user's roles that are currently enabled."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.id FROM sys_user_role ur
                JOIN sys_role r ON r.id = ur.role_id
                WHERE ur.user_id = %s AND r.status = 1
                ORDER BY r.id
                """,
                (user_id,),
            ).fetchall()
        return [int(row["id"]) for row in rows]

    def create_menu(
        self,
        name: str,
        menu_type: MenuType = MenuType.PAGE,
        *,
        path: Optional[str] = None,
        parent_id: Optional[int] = None,
        status: MenuStatus = MenuStatus.ENABLED,
        sort_order: int = 0,
        icon: Optional[str] = None,
        component: Optional[str] = None,
        hide_in_menu: bool = False,
        is_external_link: bool = False,
        perm: Optional[str] = None,
        keep_alive: bool = False,
    ) -> Menu:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO sys_menu (name, type, path, parent_id, status, sort_order, icon,
                                      component, hide_in_menu, is_external_link, perm, keep_alive)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    name,
                    int(menu_type),
                    path,
                    parent_id or None,
                    int(status),
                    sort_order,
                    icon,
                    component,
                    hide_in_menu,
                    is_external_link,
                    perm,
                    keep_alive,
                ),
            ).fetchone()
        return self._menu_from_row(row)

    def set_menu_status(self, menu_id: int, status: MenuStatus) -> Optional[Menu]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE sys_menu SET status = %s WHERE id = %s RETURNING *",
                (int(status), menu_id),
            ).fetchone()
        return self._menu_from_row(row) if row else None

    def delete_menu(self, menu_id: int) -> bool:
        """Remove a menu row; role assignments referencing it are left dangling."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM sys_menu WHERE id = %s RETURNING id", (menu_id,)
            ).fetchone()
        return row is not None

    def list_menus(self) -> List[Menu]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM sys_menu ORDER BY sort_order, id").fetchall()
        return [self._menu_from_row(row) for row in rows]

    def list_role_menu_ids(self, role_ids: Iterable[int]) -> List[int]:
        ids = list(role_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT menu_id FROM sys_role_menu WHERE role_id = ANY(%s) ORDER BY menu_id",
                (ids,),
            ).fetchall()
        return [int(row["menu_id"]) for row in rows]

    def set_role_menus(self, role_id: int, menu_ids: Sequence[int]) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM sys_role_menu WHERE role_id = %s", (role_id,))
                for menu_id in dict.fromkeys(menu_ids):
                    conn.execute(
                        "INSERT INTO sys_role_menu (role_id, menu_id) VALUES (%s, %s)",
                        (role_id, menu_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": role_id})

    # -- token records ---------------------------------------------------

    def create_token_record(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sys_user_token (user_id, access_token, refresh_token,
                                                access_token_expires_at, refresh_token_expires_at,
                                                client_ip, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        access_token,
                        refresh_token,
                        access_token_expires_at,
                        refresh_token_expires_at,
                        client_ip,
                        user_agent,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already issued", {"user_id": user_id})
        return self._token_from_row(row)

    def get_token_by_access(self, access_token: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sys_user_token WHERE access_token = %s", (access_token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_token_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sys_user_token WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_token_record(
        self,
        old_refresh_token: str,
        new_access_token: str,
        new_refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
        *,
        client_ip: Optional[str] = None,
    ) -> Optional[tuple[TokenRecord, str]]:
        """Swap both token values in one statement keyed by the old refresh token.

        The row lock taken by the subselect makes a concurrent rotation of the
        same token re-evaluate the predicate after the winner commits, at which
        point the old value no longer matches and it gets no row back.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sys_user_token AS t
                SET access_token = %s,
                    refresh_token = %s,
                    access_token_expires_at = %s,
                    refresh_token_expires_at = %s,
                    client_ip = COALESCE(%s, t.client_ip),
                    updated_at = now()
                FROM (
                    SELECT id, access_token
                    FROM sys_user_token
                    WHERE refresh_token = %s AND NOT is_revoked
                    FOR UPDATE
                ) AS prev
                WHERE t.id = prev.id
                RETURNING t.*, prev.access_token AS previous_access_token
                """,
                (
                    new_access_token,
                    new_refresh_token,
                    access_token_expires_at,
                    refresh_token_expires_at,
                    client_ip,
                    old_refresh_token,
                ),
            ).fetchone()
        if not row:
            return None
        return self._token_from_row(row), row["previous_access_token"]

    def revoke_token_record(self, token_id: int) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sys_user_token
                SET is_revoked = true,
                    revoked_at = COALESCE(revoked_at, now()),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (token_id,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_user_tokens(self, user_id: int) -> List[TokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE sys_user_token
                SET is_revoked = true, revoked_at = now(), updated_at = now()
                WHERE user_id = %s AND NOT is_revoked
                RETURNING *
                """,
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def delete_expired_tokens(self, now: datetime) -> List[tuple[str, str]]:
        """Delete rows whose access and refresh expiries are both past ``now``."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM sys_user_token
                WHERE access_token_expires_at < %s AND refresh_token_expires_at < %s
                RETURNING access_token, refresh_token
                """,
                (now, now),
            ).fetchall()
        return [(row["access_token"], row["refresh_token"]) for row in rows]

    def token_stats(self, now: datetime, user_id: Optional[int] = None) -> TokenStats:
        sql = """
            SELECT count(*) AS total,
                   count(*) FILTER (WHERE is_revoked) AS revoked,
                   count(*) FILTER (
                       WHERE access_token_expires_at < %s AND refresh_token_expires_at < %s
                   ) AS expired,
                   count(*) FILTER (
                       WHERE NOT is_revoked AND refresh_token_expires_at >= %s
                   ) AS active
            FROM sys_user_token
        """
        params: list[Any] = [now, now, now]
        if user_id is not None:
            sql += " WHERE user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        row = row or {}
        return TokenStats(
            total=int(row.get("total") or 0),
            expired=int(row.get("expired") or 0),
            revoked=int(row.get("revoked") or 0),
            active=int(row.get("active") or 0),
        )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
