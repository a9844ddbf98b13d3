from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

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
    utcnow,
)

_SEQUENCES = ("user", "role", "menu", "token", "login_event")


class MemoryStore:
    """In-process credential and token store for development and tests.

    State is kept in dicts guarded by a single re-entrant lock and mirrored
    to ``<fs_root>/state/auth_store.json`` after every write so a restarted
    dev server keeps its users and sessions.
    """

    def __init__(self, fs_root: str = "/tmp/yishan") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.roles: Dict[int, Role] = {}
        self.user_roles: Dict[int, List[int]] = {}
        self.menus: Dict[int, Menu] = {}
        self.role_menus: Dict[int, List[int]] = {}
        self.tokens: Dict[int, TokenRecord] = {}
        self.login_events: List[LoginEvent] = []
        self._seq: Dict[str, int] = {name: 1 for name in _SEQUENCES}
        # Thread lock for sequence counters
        self._seq_lock = threading.Lock()
        # RLock so helpers can nest inside public methods on the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self.default_records()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _next_id(self, kind: str) -> int:
        with self._seq_lock:
            value = self._seq[kind]
            self._seq[kind] = value + 1
            return value

    def default_records(self) -> None:
        """Seed the system roles and the base navigation tree."""
        self.create_role("Super Admin", "superAdmin", is_system_default=True, persist=False)
        admin = self.create_role("Admin", "admin", is_system_default=True, persist=False)
        dashboard = self.create_menu(
            "Dashboard", MenuType.PAGE, path="/dashboard", sort_order=1, icon="dashboard",
            persist=False,
        )
        system = self.create_menu(
            "System", MenuType.DIRECTORY, path="/system", sort_order=10, icon="setting",
            persist=False,
        )
        users = self.create_menu(
            "Users", MenuType.PAGE, path="/system/users", parent_id=system.id, sort_order=1,
            component="./system/users", perm="system:user:list", persist=False,
        )
        roles = self.create_menu(
            "Roles", MenuType.PAGE, path="/system/roles", parent_id=system.id, sort_order=2,
            component="./system/roles", perm="system:role:list", persist=False,
        )
        self.create_menu(
            "Menus", MenuType.PAGE, path="/system/menus", parent_id=system.id, sort_order=3,
            component="./system/menus", perm="system:menu:list", persist=False,
        )
        self.create_menu(
            "Create User", MenuType.ACTION, parent_id=users.id, sort_order=1,
            perm="system:user:create", hide_in_menu=True, persist=False,
        )
        self.create_menu(
            "Documentation", MenuType.PAGE, path="https://docs.yishan.dev", sort_order=99,
            is_external_link=True, icon="read", persist=False,
        )
        self.role_menus[admin.id] = [dashboard.id, users.id, roles.id]

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        real_name: Optional[str] = None,
        status: UserStatus = UserStatus.ENABLED,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if email and existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_id("user"),
                username=username,
                email=email,
                real_name=real_name,
                status=UserStatus(status),
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and user.deleted_at is None:
                return user
            return None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve a login identifier against username first, then email."""
        with self._data_lock:
            live = [u for u in self.users.values() if u.deleted_at is None]
            for user in live:
                if user.username == identifier:
                    return user
            for user in live:
                if user.email and user.email == identifier:
                    return user
            return None

    def set_user_status(self, user_id: int, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def record_login_success(
        self, user_id: int, login_time: datetime, client_ip: Optional[str]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.last_login_time = login_time
            user.last_login_ip = client_ip
            user.login_count += 1
            user.failed_login_count = 0
            user.updated_at = login_time
            self._persist_state()
            return user

    def record_login_failure(self, user_id: int) -> int:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return 0
            user.failed_login_count += 1
            user.updated_at = utcnow()
            self._persist_state()
            return user.failed_login_count

    def soft_delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return False
            user.deleted_at = utcnow()
            self._persist_state()
            return True

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

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
        with self._data_lock:
            event = LoginEvent(
                id=self._next_id("login_event"),
                username=username,
                success=success,
                message=message,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.login_events.append(event)
            self._persist_state()
            return event

    def list_login_events(self, limit: int = 50) -> List[LoginEvent]:
        with self._data_lock:
            return list(reversed(self.login_events))[:limit]

    # -- roles & menus ---------------------------------------------------

    def create_role(
        self,
        name: str,
        code: str,
        *,
        status: int = 1,
        is_system_default: bool = False,
        persist: bool = True,
    ) -> Role:
        with self._data_lock:
            if any(r.code == code for r in self.roles.values()):
                raise ConstraintViolation("role code already exists", {"field": "code"})
            role = Role(
                id=self._next_id("role"),
                name=name,
                code=code,
                status=status,
                is_system_default=is_system_default,
            )
            self.roles[role.id] = role
            if persist:
                self._persist_state()
            return role

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.code == code), None)

    def assign_user_roles(self, user_id: int, role_ids: Sequence[int]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            missing = [rid for rid in role_ids if rid not in self.roles]
            if missing:
                raise ConstraintViolation("role does not exist", {"role_ids": missing})
            self.user_roles[user_id] = list(dict.fromkeys(role_ids))
            self._persist_state()

    def get_user_role_ids(self, user_id: int) -> List[int]:
        """Return ids of the user's roles that are currently enabled."""
        with self._data_lock:
            return [
                rid
                for rid in self.user_roles.get(user_id, [])
                if rid in self.roles and self.roles[rid].status == 1
            ]

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
        persist: bool = True,
    ) -> Menu:
        with self._data_lock:
            if parent_id and parent_id not in self.menus:
                raise ConstraintViolation("parent menu does not exist", {"parent_id": parent_id})
            menu = Menu(
                id=self._next_id("menu"),
                name=name,
                type=MenuType(menu_type),
                path=path,
                parent_id=parent_id or None,
                status=MenuStatus(status),
                sort_order=sort_order,
                icon=icon,
                component=component,
                hide_in_menu=hide_in_menu,
                is_external_link=is_external_link,
                perm=perm,
                keep_alive=keep_alive,
            )
            self.menus[menu.id] = menu
            if persist:
                self._persist_state()
            return menu

    def set_menu_status(self, menu_id: int, status: MenuStatus) -> Optional[Menu]:
        with self._data_lock:
            menu = self.menus.get(menu_id)
            if not menu:
                return None
            menu.status = MenuStatus(status)
            self._persist_state()
            return menu

    def delete_menu(self, menu_id: int) -> bool:
        """Remove a menu row; role assignments referencing it are left dangling."""
        with self._data_lock:
            removed = self.menus.pop(menu_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_menus(self) -> List[Menu]:
        with self._data_lock:
            return [replace(m) for m in self.menus.values()]

    def list_role_menu_ids(self, role_ids: Iterable[int]) -> List[int]:
        with self._data_lock:
            seen: Dict[int, None] = {}
            for rid in role_ids:
                for mid in self.role_menus.get(rid, []):
                    seen.setdefault(mid, None)
            return list(seen)

    def set_role_menus(self, role_id: int, menu_ids: Sequence[int]) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            self.role_menus[role_id] = list(dict.fromkeys(menu_ids))
            self._persist_state()

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.tokens.values():
                if existing.access_token == access_token or existing.refresh_token == refresh_token:
                    raise ConstraintViolation("token value already issued", {"user_id": user_id})
            now = utcnow()
            record = TokenRecord(
                id=self._next_id("token"),
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                access_token_expires_at=access_token_expires_at,
                refresh_token_expires_at=refresh_token_expires_at,
                client_ip=client_ip,
                user_agent=user_agent,
                created_at=now,
                updated_at=now,
            )
            self.tokens[record.id] = record
            self._persist_state()
            return replace(record)

    def get_token_by_access(self, access_token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            for record in self.tokens.values():
                if record.access_token == access_token:
                    return replace(record)
            return None

    def get_token_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            for record in self.tokens.values():
                if record.refresh_token == refresh_token:
                    return replace(record)
            return None

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
        """Swap both token values on the row holding ``old_refresh_token``.

        Returns the updated record and the superseded access token, or None
        when no live row matches. The lookup and the write happen under the
        data lock so only one of two racing callers can match.
        """
        with self._data_lock:
            record = next(
                (
                    r
                    for r in self.tokens.values()
                    if r.refresh_token == old_refresh_token and not r.is_revoked
                ),
                None,
            )
            if record is None:
                return None
            previous_access = record.access_token
            record.access_token = new_access_token
            record.refresh_token = new_refresh_token
            record.access_token_expires_at = access_token_expires_at
            record.refresh_token_expires_at = refresh_token_expires_at
            if client_ip:
                record.client_ip = client_ip
            record.updated_at = utcnow()
            self._persist_state()
            return replace(record), previous_access

    def revoke_token_record(self, token_id: int) -> Optional[TokenRecord]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record:
                return None
            if not record.is_revoked:
                now = utcnow()
                record.is_revoked = True
                record.revoked_at = now
                record.updated_at = now
                self._persist_state()
            return replace(record)

    def revoke_user_tokens(self, user_id: int) -> List[TokenRecord]:
        with self._data_lock:
            now = utcnow()
            revoked: List[TokenRecord] = []
            for record in self.tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    record.updated_at = now
                    revoked.append(replace(record))
            if revoked:
                self._persist_state()
            return revoked

    def delete_expired_tokens(self, now: datetime) -> List[tuple[str, str]]:
        """Delete rows whose access and refresh expiries are both past ``now``."""
        with self._data_lock:
            stale = [r for r in self.tokens.values() if r.is_fully_expired(now)]
            for record in stale:
                self.tokens.pop(record.id, None)
            if stale:
                self._persist_state()
            return [(r.access_token, r.refresh_token) for r in stale]

    def token_stats(self, now: datetime, user_id: Optional[int] = None) -> TokenStats:
        with self._data_lock:
            stats = TokenStats()
            for record in self.tokens.values():
                if user_id is not None and record.user_id != user_id:
                    continue
                stats.total += 1
                if record.is_revoked:
                    stats.revoked += 1
                if record.is_fully_expired(now):
                    stats.expired += 1
                if not record.is_revoked and record.refresh_token_expires_at >= now:
                    stats.active += 1
            return stats

    def ping(self) -> bool:
        return True

    # -- persistence -----------------------------------------------------

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "sequences": dict(self._seq),
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    {
                        "user_id": user_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for user_id, creds in self.credentials.items()
                ],
                "roles": [self._serialize_role(r) for r in self.roles.values()],
                "user_roles": [
                    {"user_id": uid, "role_ids": rids} for uid, rids in self.user_roles.items()
                ],
                "menus": [self._serialize_menu(m) for m in self.menus.values()],
                "role_menus": [
                    {"role_id": rid, "menu_ids": mids} for rid, mids in self.role_menus.items()
                ],
                "tokens": [self._serialize_token(t) for t in self.tokens.values()],
                "login_events": [self._serialize_login_event(e) for e in self.login_events],
            }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.user_roles = {
            entry["user_id"]: list(entry["role_ids"]) for entry in data.get("user_roles", [])
        }
        self.menus = {m["id"]: self._deserialize_menu(m) for m in data.get("menus", [])}
        self.role_menus = {
            entry["role_id"]: list(entry["menu_ids"]) for entry in data.get("role_menus", [])
        }
        self.tokens = {t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])}
        self.login_events = [
            self._deserialize_login_event(e) for e in data.get("login_events", [])
        ]
        # Never hand out an id below what is already stored
        floors = {
            "user": max(self.users, default=0),
            "role": max(self.roles, default=0),
            "menu": max(self.menus, default=0),
            "token": max(self.tokens, default=0),
            "login_event": max((e.id for e in self.login_events), default=0),
        }
        persisted = data.get("sequences", {})
        self._seq = {
            name: max(int(persisted.get(name, 1)), floors[name] + 1) for name in _SEQUENCES
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "real_name": user.real_name,
            "status": int(user.status),
            "last_login_time": self._serialize_datetime(user.last_login_time),
            "last_login_ip": user.last_login_ip,
            "login_count": user.login_count,
            "failed_login_count": user.failed_login_count,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            email=data.get("email"),
            real_name=data.get("real_name"),
            status=UserStatus(data.get("status", UserStatus.ENABLED)),
            last_login_time=self._deserialize_datetime(data.get("last_login_time")),
            last_login_ip=data.get("last_login_ip"),
            login_count=data.get("login_count", 0),
            failed_login_count=data.get("failed_login_count", 0),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "code": role.code,
            "status": role.status,
            "is_system_default": role.is_system_default,
            "created_at": self._serialize_datetime(role.created_at),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=int(data["id"]),
            name=data["name"],
            code=data["code"],
            status=data.get("status", 1),
            is_system_default=data.get("is_system_default", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_menu(self, menu: Menu) -> dict:
        return {
            "id": menu.id,
            "name": menu.name,
            "type": int(menu.type),
            "path": menu.path,
            "parent_id": menu.parent_id,
            "status": int(menu.status),
            "sort_order": menu.sort_order,
            "icon": menu.icon,
            "component": menu.component,
            "hide_in_menu": menu.hide_in_menu,
            "is_external_link": menu.is_external_link,
            "perm": menu.perm,
            "keep_alive": menu.keep_alive,
        }

    def _deserialize_menu(self, data: dict) -> Menu:
        return Menu(
            id=int(data["id"]),
            name=data["name"],
            type=MenuType(data.get("type", MenuType.PAGE)),
            path=data.get("path"),
            parent_id=data.get("parent_id") or None,
            status=MenuStatus(data.get("status", MenuStatus.ENABLED)),
            sort_order=data.get("sort_order", 0),
            icon=data.get("icon"),
            component=data.get("component"),
            hide_in_menu=data.get("hide_in_menu", False),
            is_external_link=data.get("is_external_link", False),
            perm=data.get("perm"),
            keep_alive=data.get("keep_alive", False),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "access_token_expires_at": self._serialize_datetime(record.access_token_expires_at),
            "refresh_token_expires_at": self._serialize_datetime(record.refresh_token_expires_at),
            "token_type": record.token_type,
            "client_ip": record.client_ip,
            "user_agent": record.user_agent,
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            access_token_expires_at=self._deserialize_datetime(data["access_token_expires_at"]),
            refresh_token_expires_at=self._deserialize_datetime(data["refresh_token_expires_at"]),
            token_type=data.get("token_type", "Bearer"),
            client_ip=data.get("client_ip"),
            user_agent=data.get("user_agent"),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_login_event(self, event: LoginEvent) -> dict:
        return {
            "id": event.id,
            "username": event.username,
            "success": event.success,
            "message": event.message,
            "user_id": event.user_id,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_login_event(self, data: dict) -> LoginEvent:
        return LoginEvent(
            id=int(data["id"]),
            username=data["username"],
            success=data["success"],
            message=data.get("message", ""),
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
