"""
tests/test_provisioning.py -- Unit tests for auth/provisioning.py.

Covers:
  - First sight creates exactly one user with the default group and an
    unusable credential; later sights return the same record
  - The default group is read at provisioning time
  - Losing the INSERT race re-fetches the winner instead of failing
  - Many threads provisioning one new username end up with one row
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.config_store import SystemConfigStore
from auth.passwords import authenticate_user, is_usable_password
from auth.provisioning import ProvisioningError, UserProvisioner
from auth.store import UserStore
from database.schema import users as users_table


def _count_users(engine: Engine, username: str) -> int:
    with engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(users_table).where(users_table.c.username == username)
        ).scalar()


@pytest.fixture
def provisioner(user_store: UserStore, config_store: SystemConfigStore) -> UserProvisioner:
    return UserProvisioner(user_store, default_group=lambda: config_store.get_auth_config().default_group)


class TestEnsureUser:
    def test_creates_user_on_first_sight(self, provisioner: UserProvisioner, engine: Engine) -> None:
        user = provisioner.ensure_user("alice", "alice@example.com")
        assert user.id is not None
        assert user.username == "alice"
        assert user.email == "alice@example.com"
        assert user.group_id == "user"
        assert _count_users(engine, "alice") == 1

    def test_provisioned_user_has_unusable_password(self, provisioner: UserProvisioner, user_store: UserStore) -> None:
        user = provisioner.ensure_user("alice")
        assert user.hashed_password
        assert not is_usable_password(user.hashed_password)
        assert authenticate_user(user_store, "alice", user.hashed_password) is None

    def test_second_sight_returns_same_record(self, provisioner: UserProvisioner, engine: Engine) -> None:
        first = provisioner.ensure_user("alice")
        second = provisioner.ensure_user("alice", "new@example.com")
        assert second.id == first.id
        # An existing record is returned as stored, never updated.
        assert second.email is None
        assert _count_users(engine, "alice") == 1

    def test_existing_local_user_is_reused(self, provisioner: UserProvisioner, make_user) -> None:
        local = make_user("carol", "carolpass123", group_id="admin")
        assert provisioner.ensure_user("carol").id == local.id

    def test_usernames_are_case_sensitive(self, provisioner: UserProvisioner) -> None:
        assert provisioner.ensure_user("Alice").id != provisioner.ensure_user("alice").id

    def test_default_group_is_read_at_provisioning_time(
        self, provisioner: UserProvisioner, config_store: SystemConfigStore
    ) -> None:
        assert provisioner.ensure_user("first").group_id == "user"
        config_store.set_default_group("guest")
        assert provisioner.ensure_user("second").group_id == "guest"


class _LateReader(UserStore):
    """A store whose first lookup misses, as if another request inserted in between."""

    def __init__(self, engine: Engine) -> None:
        super().__init__(engine)
        self.misses = 1

    def get_by_username(self, username: str):
        if self.misses:
            self.misses -= 1
            return None
        return super().get_by_username(username)


class _Vanishing(UserStore):
    """A store where the INSERT collides but the colliding row is never visible."""

    def get_by_username(self, username: str):
        return None


class TestRace:
    def test_losing_insert_refetches_winner(self, engine: Engine, make_user) -> None:
        winner = make_user("dave")
        provisioner = UserProvisioner(_LateReader(engine), default_group=lambda: "user")

        user = provisioner.ensure_user("dave")

        assert user.id == winner.id
        assert _count_users(engine, "dave") == 1

    def test_collision_without_visible_row_raises(self, engine: Engine, make_user) -> None:
        make_user("erin")
        provisioner = UserProvisioner(_Vanishing(engine), default_group=lambda: "user")
        with pytest.raises(ProvisioningError):
            provisioner.ensure_user("erin")

    def test_concurrent_first_requests_create_one_user(self, engine: Engine) -> None:
        workers = 8
        barrier = threading.Barrier(workers)
        results: list[int] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def first_request() -> None:
            provisioner = UserProvisioner(UserStore(engine), default_group=lambda: "user")
            barrier.wait()
            try:
                user = provisioner.ensure_user("frank")
            except BaseException as exc:  # collected and asserted below
                with lock:
                    errors.append(exc)
                return
            with lock:
                results.append(user.id)

        threads = [threading.Thread(target=first_request) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(results) == workers
        assert len(set(results)) == 1
        assert _count_users(engine, "frank") == 1
