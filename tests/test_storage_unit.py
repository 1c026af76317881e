"""In-memory store and session cache behaviour."""

from datetime import datetime, timedelta, timezone

import pytest

from apitemplate.storage.errors import ConstraintViolation
from apitemplate.storage.memory import MemoryCache, MemoryStore
from apitemplate.storage.models import merge_permissions


@pytest.fixture
def store():
    return MemoryStore()


class TestMemoryStoreUsers:
    def test_create_and_lookup_user(self, store):
        user = store.create_user("Alice@Example.com", "Alice", "hash")

        assert user.id == 1
        assert store.get_user(user.id).name == "Alice"
        assert store.get_user_by_email("alice@example.com").id == user.id

    def test_duplicate_email_is_case_insensitive(self, store):
        store.create_user("a@x.com", "A", "hash")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("A@X.COM", "B", "hash")
        assert excinfo.value.detail["field"] == "email"

    def test_returned_records_are_copies(self, store):
        user = store.create_user("a@x.com", "A", "hash")
        user.name = "Mallory"
        assert store.get_user(user.id).name == "A"

    def test_list_and_count_users(self, store):
        for i in range(5):
            store.create_user(f"u{i}@x.com", f"U{i}", "hash")

        page = store.list_users(offset=2, limit=2)
        assert [u.email for u in page] == ["u2@x.com", "u3@x.com"]
        assert store.count_users() == 5

    def test_update_user(self, store):
        user = store.create_user("a@x.com", "A", "hash")
        updated = store.update_user(user.id, name="Alicia", password_hash="hash2")

        assert updated.name == "Alicia"
        assert updated.password_hash == "hash2"
        assert updated.email == "a@x.com"

    def test_update_to_taken_email_fails(self, store):
        store.create_user("a@x.com", "A", "hash")
        other = store.create_user("b@x.com", "B", "hash")
        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, email="a@x.com")

    def test_update_missing_user(self, store):
        assert store.update_user(99, name="x") is None

    def test_delete_user(self, store):
        user = store.create_user("a@x.com", "A", "hash")
        assert store.delete_user(user.id) is True
        assert store.get_user(user.id) is None
        assert store.delete_user(user.id) is False

    def test_reset_token_lifecycle(self, store):
        user = store.create_user("a@x.com", "A", "hash")
        expires = datetime.now(timezone.utc) + timedelta(minutes=15)
        store.save_reset_token(user.id, "abc123", expires)

        found = store.get_user_by_reset_token("abc123")
        assert found.id == user.id
        assert found.reset_token_valid()

        store.update_password(user.id, "newhash")
        assert store.get_user_by_reset_token("abc123") is None
        assert store.get_user(user.id).password_hash == "newhash"

    def test_expired_reset_token_is_not_valid(self, store):
        user = store.create_user("a@x.com", "A", "hash")
        store.save_reset_token(
            user.id, "abc123", datetime.now(timezone.utc) - timedelta(seconds=1)
        )
        assert not store.get_user_by_reset_token("abc123").reset_token_valid()

    def test_empty_reset_token_never_matches(self, store):
        store.create_user("a@x.com", "A", "hash")
        assert store.get_user_by_reset_token("") is None


class TestMemoryStoreRoles:
    def test_roles_carry_permissions(self, store):
        read = store.create_permission("users.read")
        write = store.create_permission("users.write")
        role = store.create_role("editor", [write.id, read.id, read.id])

        assert [p.name for p in role.permissions] == ["users.read", "users.write"]

    def test_duplicate_role_name(self, store):
        store.create_role("admin")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_role("admin")
        assert excinfo.value.detail["field"] == "name"

    def test_unknown_permission_rejected(self, store):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_role("admin", [42])
        assert excinfo.value.detail["field"] == "permission_ids"

    def test_user_roles_and_merged_permissions(self, store):
        read = store.create_permission("users.read")
        write = store.create_permission("users.write")
        viewer = store.create_role("viewer", [read.id])
        editor = store.create_role("editor", [read.id, write.id])
        user = store.create_user("a@x.com", "A", "hash")

        updated = store.set_user_roles(user.id, [editor.id, viewer.id])

        assert [r.name for r in updated.roles] == ["viewer", "editor"]
        assert [p.name for p in merge_permissions(updated.roles)] == [
            "users.read",
            "users.write",
        ]

    def test_unknown_role_rejected(self, store):
        user = store.create_user("a@x.com", "A", "hash")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.set_user_roles(user.id, [7])
        assert excinfo.value.detail["field"] == "role_ids"

    def test_deleting_role_detaches_it_from_users(self, store):
        role = store.create_role("admin")
        user = store.create_user("a@x.com", "A", "hash")
        store.set_user_roles(user.id, [role.id])

        assert store.delete_role(role.id) is True
        assert store.get_user(user.id).roles == []

    def test_deleting_permission_detaches_it_from_roles(self, store):
        perm = store.create_permission("users.read")
        role = store.create_role("viewer", [perm.id])

        assert store.delete_permission(perm.id) is True
        assert store.get_role(role.id).permissions == []

    def test_update_role_and_permissions(self, store):
        perm = store.create_permission("users.read")
        role = store.create_role("viewer")

        assert store.update_role(role.id, "reader").name == "reader"
        assert [p.id for p in store.set_role_permissions(role.id, [perm.id]).permissions] == [
            perm.id
        ]
        assert store.update_role(99, "x") is None
        assert store.set_role_permissions(99, []) is None


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class TestMemoryCache:
    async def test_set_and_get(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        assert await cache.get("k") == "v"

    async def test_missing_key(self):
        assert await MemoryCache().get("nope") is None

    async def test_entries_expire(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 10)

        clock.now += 9
        assert await cache.get("k") == "v"
        clock.now += 1
        assert await cache.get("k") is None

    async def test_set_overwrites_and_resets_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v1", 10)
        clock.now += 8
        await cache.set("k", "v2", 10)
        clock.now += 8

        assert await cache.get("k") == "v2"

    async def test_delete_is_idempotent(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        await cache.delete("k")
        await cache.delete("k")
        assert await cache.get("k") is None

    async def test_len_counts_live_entries(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set("short", "v", 5)
        await cache.set("long", "v", 50)
        clock.now += 10

        assert len(cache) == 1

    async def test_close_clears_entries(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        await cache.close()
        assert len(cache) == 0
