"""Tests for MemoryStore seeding, lookups and JSON persistence."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from yishan_auth.storage.errors import ConstraintViolation
from yishan_auth.storage.memory import MemoryStore
from yishan_auth.storage.models import MenuStatus, UserStatus, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestDefaultRecords:
    """A fresh store seeds roles and a navigation tree."""

    def test_system_roles_seeded(self, store):
        super_admin = store.get_role_by_code("superAdmin")
        admin = store.get_role_by_code("admin")

        assert super_admin.id == 1
        assert super_admin.is_system_default
        assert admin.id == 2

    def test_menu_tree_seeded(self, store):
        menus = {m.name: m for m in store.list_menus()}

        assert menus["Users"].parent_id == menus["System"].id
        assert menus["Documentation"].is_external_link
        assert menus["Create User"].hide_in_menu
        assert store.list_role_menu_ids([2]) == [
            menus["Dashboard"].id,
            menus["Users"].id,
            menus["Roles"].id,
        ]

    def test_super_admin_has_no_assignment_rows(self, store):
        assert store.list_role_menu_ids([1]) == []

    def test_state_file_written(self, store, tmp_path):
        assert (tmp_path / "state" / "auth_store.json").exists()


class TestUsers:
    """Tests for user rows and credentials."""

    def test_identifier_prefers_username(self, store):
        first = store.create_user("alice", email="alice@example.com")
        # A username that looks like someone else's email still wins
        second = store.create_user("alice@example.com", email="other@example.com")

        assert store.get_user_by_identifier("alice@example.com").id == second.id
        assert store.get_user_by_identifier("alice").id == first.id
        assert store.get_user_by_identifier("other@example.com").id == second.id
        assert store.get_user_by_identifier("nobody") is None

    def test_duplicate_username_rejected(self, store):
        store.create_user("alice")

        with pytest.raises(ConstraintViolation):
            store.create_user("alice")

    def test_duplicate_email_rejected(self, store):
        store.create_user("alice", email="a@example.com")

        with pytest.raises(ConstraintViolation):
            store.create_user("bob", email="a@example.com")

    def test_soft_deleted_user_hidden(self, store):
        user = store.create_user("alice")

        assert store.soft_delete_user(user.id)
        assert store.get_user(user.id) is None
        assert store.get_user_by_identifier("alice") is None

    def test_login_bookkeeping(self, store):
        user = store.create_user("alice")

        assert store.record_login_failure(user.id) == 1
        assert store.record_login_failure(user.id) == 2
        when = utcnow()
        store.record_login_success(user.id, when, "10.0.0.1")

        refreshed = store.get_user(user.id)
        assert refreshed.failed_login_count == 0
        assert refreshed.login_count == 1
        assert refreshed.last_login_time == when
        assert refreshed.last_login_ip == "10.0.0.1"

    def test_password_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password(999, "hash", "argon2id")

    def test_disabled_roles_filtered(self, store):
        user = store.create_user("alice")
        extra = store.create_role("Auditor", "auditor", status=0)
        store.assign_user_roles(user.id, [2, extra.id, 2])

        assert store.get_user_role_ids(user.id) == [2]

    def test_unknown_role_rejected(self, store):
        user = store.create_user("alice")

        with pytest.raises(ConstraintViolation):
            store.assign_user_roles(user.id, [42])


class TestTokenRecords:
    """Tests for token rows."""

    def test_rotation_matches_only_once(self, store):
        user = store.create_user("alice")
        now = utcnow()
        store.create_token_record(
            user.id, "a1", "r1", now + timedelta(hours=1), now + timedelta(days=1)
        )

        first = store.rotate_token_record(
            "r1", "a2", "r2", now + timedelta(hours=1), now + timedelta(days=1)
        )
        second = store.rotate_token_record(
            "r1", "a3", "r3", now + timedelta(hours=1), now + timedelta(days=1)
        )

        record, previous_access = first
        assert previous_access == "a1"
        assert record.access_token == "a2"
        assert second is None

    def test_concurrent_rotation_has_one_winner(self, store):
        user = store.create_user("alice")
        now = utcnow()
        store.create_token_record(
            user.id, "a1", "r1", now + timedelta(hours=1), now + timedelta(days=1)
        )
        barrier = threading.Barrier(8)

        def rotate(n):
            barrier.wait(timeout=5)
            return store.rotate_token_record(
                "r1", f"a-{n}", f"r-{n}", now + timedelta(hours=1), now + timedelta(days=1)
            )

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(rotate, range(8)))

        winners = [result for result in results if result is not None]
        assert len(winners) == 1
        record, previous_access = winners[0]
        assert previous_access == "a1"
        assert store.get_token_by_refresh(record.refresh_token).id == record.id
        assert store.get_token_by_refresh("r1") is None

    def test_returned_records_are_copies(self, store):
        user = store.create_user("alice")
        now = utcnow()
        record = store.create_token_record(
            user.id, "a1", "r1", now + timedelta(hours=1), now + timedelta(days=1)
        )
        record.is_revoked = True

        assert not store.get_token_by_access("a1").is_revoked

    def test_token_requires_user(self, store):
        now = utcnow()

        with pytest.raises(ConstraintViolation):
            store.create_token_record(999, "a", "r", now, now)


class TestPersistence:
    """State survives a restart against the same fs_root."""

    def test_reload_restores_state_and_sequences(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        user = first.create_user("alice", email="alice@example.com")
        first.save_password(user.id, "hash", "argon2id")
        first.assign_user_roles(user.id, [2])
        first.set_menu_status(1, MenuStatus.DISABLED)
        first.set_user_status(user.id, UserStatus.LOCKED)
        now = utcnow()
        first.create_token_record(
            user.id, "a1", "r1", now + timedelta(hours=1), now + timedelta(days=1)
        )
        first.record_login_event("alice", True, "login succeeded", user_id=user.id)

        second = MemoryStore(fs_root=str(tmp_path))

        restored = second.get_user_by_identifier("alice@example.com")
        assert restored.status == UserStatus.LOCKED
        assert second.get_password_record(user.id) == ("hash", "argon2id")
        assert second.get_user_role_ids(user.id) == [2]
        assert second.get_token_by_refresh("r1").access_token_expires_at == now + timedelta(hours=1)
        assert second.list_login_events()[0].success
        assert next(m for m in second.list_menus() if m.id == 1).status == MenuStatus.DISABLED
        assert second.create_user("bob").id == user.id + 1
