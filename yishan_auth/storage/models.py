from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(IntEnum):
    DISABLED = 0
    ENABLED = 1
    LOCKED = 2


class MenuStatus(IntEnum):
    DISABLED = 0
    ENABLED = 1


class MenuType(IntEnum):
    DIRECTORY = 0
    PAGE = 1
    ACTION = 2


@dataclass
class User:
    id: int
    username: str
    email: Optional[str] = None
    real_name: Optional[str] = None
    status: UserStatus = UserStatus.ENABLED
    last_login_time: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    login_count: int = 0
    failed_login_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


@dataclass
class UserCredential:
    user_id: int
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: int
    name: str
    code: str
    status: int = 1
    is_system_default: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Menu:
    """Flat menu row; the tree is derived from ``parent_id`` at read time."""

    id: int
    name: str
    type: MenuType = MenuType.PAGE
    path: Optional[str] = None
    parent_id: Optional[int] = None
    status: MenuStatus = MenuStatus.ENABLED
    sort_order: int = 0
    icon: Optional[str] = None
    component: Optional[str] = None
    hide_in_menu: bool = False
    is_external_link: bool = False
    perm: Optional[str] = None
    keep_alive: bool = False

    @property
    def is_root(self) -> bool:
        return not self.parent_id


@dataclass
class TokenRecord:
    id: int
    user_id: int
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_fully_expired(self, now: datetime) -> bool:
        return self.access_token_expires_at < now and self.refresh_token_expires_at < now


@dataclass
class LoginEvent:
    id: int
    username: str
    success: bool
    message: str
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenStats:
    total: int = 0
    expired: int = 0
    revoked: int = 0
    active: int = 0


@dataclass
class UserProfile:
    user: User
    role_ids: List[int] = field(default_factory=list)
