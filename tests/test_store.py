"""Unit tests for auth/store.py -- UserStore persistence.

Covers:
- catalog seeding is idempotent
- principals round-trip with roles in authority order
- duplicate username / email raise IntegrityError
- record_login_failure() counts atomically and locks at the threshold
- concurrent failures from many threads are all counted
- role creation validates name and priority; duplicates rejected
- system roles and roles still held cannot be deleted
- assignments are visible from both directions
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import InvalidRoleNameError, RoleNotFoundError
from auth.models import Principal, Role, SecurityState
from auth.roles import catalog_roles
from auth.store import UserStore


def _new_user(store: UserStore, username: str = "jdoe", roles=("ROLE_EMPLOYEE",)) -> int:
    return store.create_user(
        Principal(username=username, email=f"{username}@example.com", hashed_password="hash", full_name="J Doe"),
        role_names=roles,
    )


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


def test_seed_is_idempotent(store: UserStore):
    """The fixture already seeded the catalog; seeding again inserts nothing."""
    assert store.seed_roles(catalog_roles()) == 0
    assert len(store.list_roles()) == 12


def test_roles_listed_by_priority(store: UserStore):
    names = [r.name for r in store.list_roles()]
    assert names[0] == "ROLE_ADMIN"
    assert names[-1] == "ROLE_EMPLOYEE"


def test_create_and_fetch_principal(store: UserStore):
    uid = _new_user(store, roles=("ROLE_EMPLOYEE", "ROLE_TEAM_LEADER_ALL"))
    p = store.get_by_username("jdoe")
    assert p.id == uid
    assert p.email == "jdoe@example.com"
    assert p.security.is_active and not p.security.is_locked
    assert p.created_at
    assert [r.name for r in p.roles] == ["ROLE_TEAM_LEADER_ALL", "ROLE_EMPLOYEE"]
    assert store.get_by_id(uid).username == "jdoe"


def test_username_lookup_is_exact(store: UserStore):
    _new_user(store)
    assert store.get_by_username("JDOE") is None
    assert store.get_by_username("missing") is None


def test_duplicate_username_rejected(store: UserStore):
    _new_user(store)
    with pytest.raises(IntegrityError):
        store.create_user(Principal(username="jdoe", email="other@example.com", hashed_password="h"))


def test_duplicate_email_rejected(store: UserStore):
    _new_user(store)
    with pytest.raises(IntegrityError):
        store.create_user(Principal(username="other", email="jdoe@example.com", hashed_password="h"))


def test_unknown_role_rolls_back_user(store: UserStore):
    """A bad role name leaves no half-created principal behind."""
    with pytest.raises(RoleNotFoundError):
        _new_user(store, roles=("ROLE_DOES_NOT_EXIST",))
    assert store.get_by_username("jdoe") is None
    assert not store.has_users()


# ---------------------------------------------------------------------------
# Security state
# ---------------------------------------------------------------------------


def test_record_login_failure_locks_at_threshold(store: UserStore):
    uid = _new_user(store)
    for expected in range(1, 3):
        sec = store.record_login_failure(uid, max_attempts=3)
        assert sec.failed_attempts == expected
        assert not sec.is_locked
    sec = store.record_login_failure(uid, max_attempts=3)
    assert sec.failed_attempts == 3
    assert sec.is_locked
    assert sec.locked_at is not None


def test_concurrent_failures_are_all_counted(tmp_path):
    """Parallel failed logins on one account never lose an increment.

    Uses a file database so each thread gets its own connection and the
    writers really contend for the lock.
    """
    store = UserStore(db_url=f"sqlite:///{tmp_path / 'race.db'}", timeout=30.0)
    store.seed_roles(catalog_roles())
    uid = _new_user(store)
    workers = 8
    per_worker = 5
    barrier = threading.Barrier(workers)

    def hammer():
        barrier.wait()
        for _ in range(per_worker):
            store.record_login_failure(uid, max_attempts=5)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        for future in [pool.submit(hammer) for _ in range(workers)]:
            future.result()

    sec = store.get_by_id(uid).security
    assert sec.failed_attempts == workers * per_worker
    assert sec.is_locked
    store.close()


def test_record_login_failure_missing_user(store: UserStore):
    assert store.record_login_failure(9999, max_attempts=5) is None


def test_record_login_success_resets_counter(store: UserStore):
    uid = _new_user(store)
    store.record_login_failure(uid, max_attempts=5)
    store.record_login_success(uid, "2026-01-01T00:00:00+00:00")
    sec = store.get_by_id(uid).security
    assert sec.failed_attempts == 0
    assert sec.last_login_at == "2026-01-01T00:00:00+00:00"


def test_list_users_search_and_department(store: UserStore):
    store.create_user(
        Principal(
            username="mkim", email="min.kim@example.com", hashed_password="h", full_name="Min Kim", department="Audit"
        )
    )
    store.create_user(
        Principal(username="jlee", email="jlee@example.com", hashed_password="h", full_name="Ji Lee", department="Ops")
    )
    assert [p.username for p in store.list_users()] == ["jlee", "mkim"]
    assert [p.username for p in store.list_users(q="KIM")] == ["mkim"]
    assert [p.username for p in store.list_users(q="jlee@")] == ["jlee"]
    assert [p.username for p in store.list_users(department="Ops")] == ["jlee"]
    assert store.list_users(q="kim", department="Ops") == []
    assert store.list_users(q="_") == []


def test_update_profile(store: UserStore):
    uid = _new_user(store)
    assert store.update_profile(uid, {"department": "Audit", "phone_number": "555-0101", "username": "hijack"})
    p = store.get_by_id(uid)
    assert p.department == "Audit"
    assert p.phone_number == "555-0101"
    assert p.username == "jdoe"
    # None clears optional fields but never the required ones.
    store.update_profile(uid, {"department": None, "full_name": None})
    p = store.get_by_id(uid)
    assert p.department is None
    assert p.full_name == "J Doe"
    assert not store.update_profile(9999, {"department": "X"})


def test_update_profile_duplicate_email(store: UserStore):
    uid = _new_user(store)
    _new_user(store, username="other")
    with pytest.raises(IntegrityError):
        store.update_profile(uid, {"email": "other@example.com"})


def test_save_security_overwrites_admin_fields(store: UserStore):
    uid = _new_user(store)
    assert store.save_security(uid, SecurityState(is_active=False, is_locked=True, failed_attempts=2))
    sec = store.get_by_id(uid).security
    assert not sec.is_active and sec.is_locked and sec.failed_attempts == 2
    assert not store.save_security(9999, SecurityState())


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("name", ["role_auditor", "AUDITOR", "ROLE_auditor"])
def test_create_role_rejects_bad_names(store: UserStore, name: str):
    with pytest.raises(InvalidRoleNameError):
        store.create_role(Role(name, display_name="Auditor", priority=50))


@pytest.mark.parametrize("priority", [0, 1000])
def test_create_role_rejects_bad_priority(store: UserStore, priority: int):
    with pytest.raises(ValueError):
        store.create_role(Role("ROLE_AUDITOR", display_name="Auditor", priority=priority))


def test_create_role_duplicate(store: UserStore):
    with pytest.raises(IntegrityError):
        store.create_role(Role("ROLE_ADMIN", display_name="Again", priority=2))


def test_update_role_keeps_name(store: UserStore):
    role_id = store.create_role(Role("ROLE_AUDITOR", display_name="Auditor", priority=50))
    assert store.update_role(role_id, display_name="Internal Auditor", priority=40)
    role = store.get_role(role_id)
    assert role.name == "ROLE_AUDITOR"
    assert role.display_name == "Internal Auditor"
    assert role.priority == 40
    with pytest.raises(ValueError):
        store.update_role(role_id, priority=5000)


def test_set_role_active_and_filter(store: UserStore):
    role_id = store.get_role_by_name("ROLE_EXECUTIVE_TYPE4").id
    store.set_role_active(role_id, False)
    active = {r.name for r in store.list_roles(active_only=True)}
    assert "ROLE_EXECUTIVE_TYPE4" not in active
    assert len(active) == 11


def test_system_role_cannot_be_deleted(store: UserStore):
    with pytest.raises(ValueError):
        store.delete_role(store.get_role_by_name("ROLE_EMPLOYEE").id)


def test_role_with_members_cannot_be_deleted(store: UserStore):
    role_id = store.create_role(Role("ROLE_AUDITOR", display_name="Auditor", priority=50))
    _new_user(store, roles=("ROLE_AUDITOR",))
    with pytest.raises(ValueError):
        store.delete_role(role_id)


def test_delete_unused_custom_role(store: UserStore):
    role_id = store.create_role(Role("ROLE_AUDITOR", display_name="Auditor", priority=50))
    store.delete_role(role_id)
    assert store.get_role(role_id) is None
    with pytest.raises(RoleNotFoundError):
        store.delete_role(role_id)


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


def test_assignments_visible_both_ways(store: UserStore):
    uid = _new_user(store)
    admin_id = store.get_role_by_name("ROLE_ADMIN").id
    assert store.assign_role(uid, "ROLE_ADMIN")
    assert not store.assign_role(uid, "ROLE_ADMIN")
    assert store.users_for_role(admin_id) == [uid]
    assert [r.name for r in store.roles_for_user(uid)] == ["ROLE_ADMIN", "ROLE_EMPLOYEE"]

    assert store.revoke_role(uid, "ROLE_ADMIN")
    assert not store.revoke_role(uid, "ROLE_ADMIN")
    assert store.users_for_role(admin_id) == []


def test_set_user_roles_replaces_set(store: UserStore):
    uid = _new_user(store)
    store.set_user_roles(uid, ["ROLE_INVESTIGATOR_ALL", "ROLE_INVESTIGATOR_ALL", "ROLE_TEAM_LEADER_TYPE1"])
    assert [r.name for r in store.roles_for_user(uid)] == ["ROLE_TEAM_LEADER_TYPE1", "ROLE_INVESTIGATOR_ALL"]


def test_set_user_roles_unknown_role_keeps_old_set(store: UserStore):
    uid = _new_user(store)
    with pytest.raises(RoleNotFoundError):
        store.set_user_roles(uid, ["ROLE_ADMIN", "ROLE_NOPE"])
    assert [r.name for r in store.roles_for_user(uid)] == ["ROLE_EMPLOYEE"]
