"""Tests for role-scoped menu trees and paths."""

import pytest

from yishan_auth.service.errors import AuthorizationError
from yishan_auth.service.menu import MenuAuthorizer
from yishan_auth.storage.memory import MemoryStore
from yishan_auth.storage.models import Menu, MenuStatus, MenuType

SUPER_ADMIN = 1
EDITOR = 2
VIEWER = 3


class FakeMenuStore:
    def __init__(self, menus, role_menus=None):
        self.menus = {menu.id: menu for menu in menus}
        self.role_menus = role_menus or {}
        self.list_calls = 0

    def list_menus(self):
        self.list_calls += 1
        return list(self.menus.values())

    def list_role_menu_ids(self, role_ids):
        ids = []
        for rid in role_ids:
            for mid in self.role_menus.get(rid, []):
                if mid not in ids:
                    ids.append(mid)
        return ids

    def set_role_menus(self, role_id, menu_ids):
        self.role_menus[role_id] = list(menu_ids)

    def create_menu(self, name, menu_type=MenuType.PAGE, **fields):
        menu = Menu(id=max(self.menus, default=0) + 1, name=name, type=menu_type, **fields)
        self.menus[menu.id] = menu
        return menu

    def set_menu_status(self, menu_id, status):
        menu = self.menus.get(menu_id)
        if menu is not None:
            menu.status = status
        return menu

    def delete_menu(self, menu_id):
        return self.menus.pop(menu_id, None) is not None


class FakeMenuCache:
    def __init__(self):
        self.data = {}

    async def get_menu_cache(self, scope, role_key):
        return self.data.get(f"menu:{scope}:{role_key}")

    async def set_menu_cache(self, scope, role_key, payload, ttl_seconds):
        self.data[f"menu:{scope}:{role_key}"] = payload

    async def invalidate_namespace(self, namespace):
        doomed = [key for key in self.data if key.startswith(f"{namespace}:")]
        for key in doomed:
            del self.data[key]
        return len(doomed)


class BrokenMenuCache:
    async def get_menu_cache(self, scope, role_key):
        raise ConnectionError("redis down")

    async def set_menu_cache(self, scope, role_key, payload, ttl_seconds):
        raise ConnectionError("redis down")

    async def invalidate_namespace(self, namespace):
        raise ConnectionError("redis down")


def _menus():
    return [
        Menu(id=1, name="System", type=MenuType.DIRECTORY, path="/system", sort_order=10),
        Menu(id=2, name="Dashboard", path="/dashboard", sort_order=1),
        Menu(id=3, name="Users", path="/system/users", parent_id=1, sort_order=2),
        Menu(id=4, name="Roles", path="/system/roles", parent_id=1, sort_order=1),
        Menu(id=5, name="Create", type=MenuType.ACTION, parent_id=3, sort_order=1),
        Menu(id=6, name="Legacy", path="/legacy", sort_order=5, status=MenuStatus.DISABLED),
        Menu(
            id=7, name="Docs", path="https://docs.example.com", sort_order=99,
            is_external_link=True,
        ),
        Menu(id=8, name="Reports", path="/system/reports", parent_id=1, sort_order=3),
    ]


def _ids(tree):
    return [node["id"] for node in tree]


@pytest.fixture
def store():
    return FakeMenuStore(_menus())


@pytest.fixture
def authorizer(store):
    return MenuAuthorizer(store, super_admin_role_id=SUPER_ADMIN)


class TestAuthorizedTree:
    """Tests for tree construction."""

    async def test_ancestor_closure(self, authorizer, store):
        store.role_menus[EDITOR] = [5]

        tree = await authorizer.get_authorized_tree([EDITOR])

        assert _ids(tree) == [1]
        assert _ids(tree[0]["children"]) == [3]
        assert _ids(tree[0]["children"][0]["children"]) == [5]

    async def test_children_sorted_by_sort_order(self, authorizer, store):
        store.role_menus[EDITOR] = [3, 4, 8, 2]

        tree = await authorizer.get_authorized_tree([EDITOR])

        assert _ids(tree) == [2, 1]
        assert _ids(tree[0]["children"]) == []
        assert _ids(tree[1]["children"]) == [4, 3, 8]

    async def test_super_admin_without_assignments_sees_all_active(self, authorizer):
        tree = await authorizer.get_authorized_tree([SUPER_ADMIN])

        assert _ids(tree) == [2, 1, 7]
        assert _ids(tree[1]["children"]) == [4, 3, 8]
        assert _ids(tree[1]["children"][1]["children"]) == [5]

    async def test_super_admin_with_assignments_is_scoped(self, authorizer, store):
        store.role_menus[SUPER_ADMIN] = [2]

        tree = await authorizer.get_authorized_tree([SUPER_ADMIN])

        assert _ids(tree) == [2]

    async def test_super_admin_default_needs_exact_role_set(self, authorizer):
        assert await authorizer.get_authorized_tree([SUPER_ADMIN, VIEWER]) == []

    async def test_no_roles_sees_nothing(self, authorizer):
        assert await authorizer.get_authorized_tree([]) == []

    async def test_unknown_menu_ids_ignored(self, authorizer, store):
        store.role_menus[EDITOR] = [404, 2]

        tree = await authorizer.get_authorized_tree([EDITOR])

        assert _ids(tree) == [2]

    async def test_disabled_parent_promotes_child_to_root(self, authorizer, store):
        store.menus[1].status = MenuStatus.DISABLED
        store.role_menus[EDITOR] = [4]

        tree = await authorizer.get_authorized_tree([EDITOR])

        assert _ids(tree) == [4]
        assert tree[0]["parentId"] == 1

    async def test_disabled_granted_menu_hidden(self, authorizer, store):
        store.role_menus[EDITOR] = [6, 2]

        tree = await authorizer.get_authorized_tree([EDITOR])

        assert _ids(tree) == [2]

    async def test_parent_cycle_terminates(self, authorizer, store):
        store.menus[1].parent_id = 3
        store.role_menus[EDITOR] = [5]

        tree = await authorizer.get_authorized_tree([EDITOR])

        # Every node on the cycle has a present parent, so none is a root
        assert tree == []

    async def test_nodes_are_camel_case(self, authorizer, store):
        store.role_menus[EDITOR] = [2]

        node = (await authorizer.get_authorized_tree([EDITOR]))[0]

        assert node["sortOrder"] == 1
        assert node["isExternalLink"] is False
        assert node["hideInMenu"] is False
        assert node["children"] == []


class TestAuthorizedPaths:
    """Tests for the flat path list."""

    async def test_paths_include_ancestors_skip_empty_and_external(self, authorizer, store):
        store.role_menus[EDITOR] = [5, 7]

        paths = await authorizer.get_authorized_paths([EDITOR])

        assert paths == ["/system/users", "/system"]

    async def test_super_admin_paths(self, authorizer):
        paths = await authorizer.get_authorized_paths([SUPER_ADMIN])

        assert set(paths) == {"/dashboard", "/system", "/system/users", "/system/roles", "/system/reports"}

    async def test_ensure_path_allowed(self, authorizer, store):
        store.role_menus[EDITOR] = [4]

        await authorizer.ensure_path_allowed([EDITOR], "/system/roles")
        with pytest.raises(AuthorizationError) as exc_info:
            await authorizer.ensure_path_allowed([EDITOR], "/system/users")
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == {"path": "/system/users"}


class TestMenuCache:
    """Tests for cached views and invalidation."""

    async def test_cached_tree_served_without_store(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)
        store.role_menus[EDITOR] = [2]

        first = await authorizer.get_authorized_tree([EDITOR])
        second = await authorizer.get_authorized_tree([EDITOR])

        assert first == second
        assert store.list_calls == 1
        assert "menu:tree:2" in cache.data

    async def test_role_key_ignores_order(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)

        await authorizer.get_authorized_paths([VIEWER, EDITOR])
        await authorizer.get_authorized_paths([EDITOR, VIEWER])

        assert store.list_calls == 1
        assert "menu:paths:2,3" in cache.data

    async def test_assign_role_menus_invalidates(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)
        store.role_menus[EDITOR] = [2]
        await authorizer.get_authorized_tree([EDITOR])

        await authorizer.assign_role_menus(EDITOR, [4])
        tree = await authorizer.get_authorized_tree([EDITOR])

        assert store.role_menus[EDITOR] == [4]
        assert _ids(tree) == [1]

    async def test_disabling_menu_drops_it_from_cached_views(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)
        assert _ids(await authorizer.get_authorized_tree([SUPER_ADMIN])) == [2, 1, 7]
        assert "/dashboard" in await authorizer.get_authorized_paths([SUPER_ADMIN])

        menu = await authorizer.set_menu_status(2, MenuStatus.DISABLED)

        assert menu.status == MenuStatus.DISABLED
        assert cache.data == {}
        assert _ids(await authorizer.get_authorized_tree([SUPER_ADMIN])) == [1, 7]
        assert "/dashboard" not in await authorizer.get_authorized_paths([SUPER_ADMIN])

    async def test_deleting_menu_drops_it_from_cached_tree(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)
        tree = await authorizer.get_authorized_tree([SUPER_ADMIN])
        assert _ids(tree[1]["children"]) == [4, 3, 8]

        assert await authorizer.delete_menu(8) is True
        tree = await authorizer.get_authorized_tree([SUPER_ADMIN])

        assert _ids(tree[1]["children"]) == [4, 3]

    async def test_created_menu_appears_in_cached_tree(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)
        await authorizer.get_authorized_tree([SUPER_ADMIN])

        menu = await authorizer.create_menu(
            "Audit", path="/system/audit", parent_id=1, sort_order=9
        )
        tree = await authorizer.get_authorized_tree([SUPER_ADMIN])

        assert _ids(tree[1]["children"]) == [4, 3, 8, menu.id]

    async def test_unknown_menu_writes_keep_cache(self, store):
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(store, cache, super_admin_role_id=SUPER_ADMIN)
        await authorizer.get_authorized_tree([SUPER_ADMIN])

        assert await authorizer.set_menu_status(404, MenuStatus.DISABLED) is None
        assert await authorizer.delete_menu(404) is False
        assert "menu:tree:1" in cache.data

    async def test_menu_writes_through_memory_store(self, tmp_path):
        memory = MemoryStore(fs_root=str(tmp_path))
        cache = FakeMenuCache()
        authorizer = MenuAuthorizer(memory, cache, super_admin_role_id=SUPER_ADMIN)
        dashboard = next(m for m in memory.list_menus() if m.path == "/dashboard")
        assert "/dashboard" in await authorizer.get_authorized_paths([SUPER_ADMIN])

        await authorizer.set_menu_status(dashboard.id, MenuStatus.DISABLED)
        created = await authorizer.create_menu("Audit", path="/audit", sort_order=50)
        paths = await authorizer.get_authorized_paths([SUPER_ADMIN])

        assert "/dashboard" not in paths
        assert "/audit" in paths
        assert await authorizer.delete_menu(created.id)
        assert "/audit" not in await authorizer.get_authorized_paths([SUPER_ADMIN])

    async def test_broken_cache_is_ignored(self, store):
        authorizer = MenuAuthorizer(store, BrokenMenuCache(), super_admin_role_id=SUPER_ADMIN)
        store.role_menus[EDITOR] = [2]

        assert _ids(await authorizer.get_authorized_tree([EDITOR])) == [2]
        assert await authorizer.invalidate() == 0
        await authorizer.assign_role_menus(EDITOR, [3])
