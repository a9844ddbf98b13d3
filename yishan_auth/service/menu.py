from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from yishan_auth.logging import get_logger
from yishan_auth.service.errors import AuthorizationError
from yishan_auth.storage.models import Menu, MenuStatus, MenuType
from yishan_auth.storage.redis_cache import MENU_NAMESPACE

logger = get_logger(__name__)


class MenuStore(Protocol):
    def list_menus(self) -> List[Menu]: ...

    def list_role_menu_ids(self, role_ids: Iterable[int]) -> List[int]: ...

    def set_role_menus(self, role_id: int, menu_ids: Sequence[int]) -> None: ...

    def create_menu(self, name: str, menu_type: MenuType = ..., **fields: Any) -> Menu: ...

    def set_menu_status(self, menu_id: int, status: MenuStatus) -> Optional[Menu]: ...

    def delete_menu(self, menu_id: int) -> bool: ...


class MenuCache(Protocol):
    async def get_menu_cache(self, scope: str, role_key: str) -> Any: ...

    async def set_menu_cache(
        self, scope: str, role_key: str, payload: Any, ttl_seconds: int
    ) -> None: ...

    async def invalidate_namespace(self, namespace: str) -> int: ...


def _sort_key(menu: Menu) -> tuple[int, int]:
    return menu.sort_order, menu.id


def serialize_menu(menu: Menu) -> dict[str, Any]:
    return {
        "id": menu.id,
        "name": menu.name,
        "type": int(menu.type),
        "path": menu.path,
        "icon": menu.icon,
        "component": menu.component,
        "parentId": menu.parent_id,
        "status": int(menu.status),
        "sortOrder": menu.sort_order,
        "hideInMenu": menu.hide_in_menu,
        "isExternalLink": menu.is_external_link,
        "perm": menu.perm,
        "keepAlive": menu.keep_alive,
    }


class MenuAuthorizer:
    """Role-scoped view of the navigation tree.

    Directly granted menu ids come from role-menu assignment rows; every
    ancestor of a granted node is visible as well so leaves stay reachable.
    The super-admin role with no assignment rows at all sees every active
    menu. Trees are rebuilt from the flat ``parent_id`` relation on each
    call (or served from the ``menu:`` cache namespace).
    """

    def __init__(
        self,
        store: MenuStore,
        cache: Optional[MenuCache] = None,
        *,
        super_admin_role_id: int = 1,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self.store = store
        self.cache = cache
        self.super_admin_role_id = super_admin_role_id
        self.cache_ttl_seconds = cache_ttl_seconds
        self.logger = logger

    @staticmethod
    def _role_key(role_ids: Iterable[int]) -> str:
        ordered = sorted(set(role_ids))
        return ",".join(str(rid) for rid in ordered) if ordered else "none"

    async def _cache_get(self, scope: str, role_key: str) -> Any:
        if not self.cache:
            return None
        try:
            return await self.cache.get_menu_cache(scope, role_key)
        except Exception as exc:
            self.logger.warning("menu_cache_read_failed", scope=scope, error=str(exc))
            return None

    async def _cache_put(self, scope: str, role_key: str, payload: Any) -> None:
        if not self.cache:
            return
        try:
            await self.cache.set_menu_cache(scope, role_key, payload, self.cache_ttl_seconds)
        except Exception as exc:
            self.logger.warning("menu_cache_write_failed", scope=scope, error=str(exc))

    def _allowed_ids(self, role_ids: Iterable[int], menus: Dict[int, Menu]) -> set[int]:
        role_set = set(role_ids)
        assigned = set(self.store.list_role_menu_ids(sorted(role_set))) if role_set else set()

        if role_set == {self.super_admin_role_id} and not assigned:
            return {mid for mid, menu in menus.items() if menu.status == MenuStatus.ENABLED}

        allow: set[int] = set()
        limit = len(menus)
        for menu_id in assigned:
            current: Optional[int] = menu_id
            steps = 0
            # Assignment rows may point at deleted menus; those are skipped
            while current and current in menus and current not in allow:
                if steps >= limit:
                    self.logger.warning("menu_parent_cycle", start_id=menu_id, stopped_at=current)
                    break
                allow.add(current)
                current = menus[current].parent_id
                steps += 1
        return allow

    def _build_tree(self, nodes: List[Menu]) -> List[dict[str, Any]]:
        present = {node.id for node in nodes}
        children: Dict[Optional[int], List[Menu]] = {}
        for node in nodes:
            parent = node.parent_id if node.parent_id in present else None
            children.setdefault(parent, []).append(node)
        for siblings in children.values():
            siblings.sort(key=_sort_key)

        emitted: set[int] = set()

        def assemble(parent: Optional[int]) -> List[dict[str, Any]]:
            branch = []
            for node in children.get(parent, []):
                if node.id in emitted:
                    continue
                emitted.add(node.id)
                item = serialize_menu(node)
                item["children"] = assemble(node.id)
                branch.append(item)
            return branch

        return assemble(None)

    async def get_authorized_tree(self, role_ids: Iterable[int]) -> List[dict[str, Any]]:
        role_ids = list(role_ids)
        role_key = self._role_key(role_ids)
        cached = await self._cache_get("tree", role_key)
        if cached is not None:
            return cached

        menus = {menu.id: menu for menu in self.store.list_menus()}
        allow = self._allowed_ids(role_ids, menus)
        visible = [
            menus[mid] for mid in allow if menus[mid].status == MenuStatus.ENABLED
        ]
        tree = self._build_tree(visible)
        await self._cache_put("tree", role_key, tree)
        return tree

    async def get_authorized_paths(self, role_ids: Iterable[int]) -> List[str]:
        """Flat, de-duplicated route paths for client-side route guards.

        Uses the same allow set as the tree; external links and nodes without
        a path are left out.
        """
        role_ids = list(role_ids)
        role_key = self._role_key(role_ids)
        cached = await self._cache_get("paths", role_key)
        if cached is not None:
            return cached

        menus = {menu.id: menu for menu in self.store.list_menus()}
        allow = self._allowed_ids(role_ids, menus)
        paths: List[str] = []
        seen: set[str] = set()
        for menu in sorted((menus[mid] for mid in allow), key=_sort_key):
            if not menu.path or menu.is_external_link or menu.path in seen:
                continue
            seen.add(menu.path)
            paths.append(menu.path)
        await self._cache_put("paths", role_key, paths)
        return paths

    async def invalidate(self) -> int:
        """Drop every cached tree and path list."""
        if not self.cache:
            return 0
        try:
            return await self.cache.invalidate_namespace(MENU_NAMESPACE)
        except Exception as exc:
            self.logger.warning("menu_cache_invalidate_failed", error=str(exc))
            return 0

    async def assign_role_menus(self, role_id: int, menu_ids: Sequence[int]) -> None:
        """Replace the role's assignment rows and drop stale cached views."""
        self.store.set_role_menus(role_id, list(menu_ids))
        await self.invalidate()
        self.logger.info("role_menus_assigned", role_id=role_id, menu_count=len(menu_ids))

    async def create_menu(
        self, name: str, menu_type: MenuType = MenuType.PAGE, **fields: Any
    ) -> Menu:
        menu = self.store.create_menu(name, menu_type, **fields)
        await self.invalidate()
        self.logger.info("menu_created", menu_id=menu.id, parent_id=menu.parent_id)
        return menu

    async def set_menu_status(self, menu_id: int, status: MenuStatus) -> Optional[Menu]:
        """Enable or disable a menu; returns None when the id is unknown."""
        menu = self.store.set_menu_status(menu_id, status)
        if menu is None:
            return None
        await self.invalidate()
        self.logger.info("menu_status_changed", menu_id=menu_id, status=int(menu.status))
        return menu

    async def delete_menu(self, menu_id: int) -> bool:
        removed = self.store.delete_menu(menu_id)
        if removed:
            await self.invalidate()
            self.logger.info("menu_deleted", menu_id=menu_id)
        return removed

    async def ensure_path_allowed(self, role_ids: Iterable[int], path: str) -> None:
        """Raise ``AuthorizationError`` unless ``path`` is among the authorized paths."""
        role_ids = list(role_ids)
        if path not in await self.get_authorized_paths(role_ids):
            self.logger.info("menu_path_denied", path=path, role_key=self._role_key(role_ids))
            raise AuthorizationError("menu access denied", detail={"path": path})
