"""Tests for role and permission resolution."""

import pytest

from taskauth.service.errors import NotFoundError
from taskauth.service.permissions import EffectivePermissions
from taskauth.service.runtime import DEFAULT_PERMISSIONS, DEFAULT_ROLES, seed_defaults


class TestSeeding:
    def test_defaults_exist(self, runtime):
        for name in DEFAULT_PERMISSIONS:
            assert runtime.store.find_permission_by_name(name) is not None
        for name in DEFAULT_ROLES:
            assert runtime.store.find_role_by_name(name) is not None

    def test_seeding_twice_changes_nothing(self, runtime):
        counts = (
            len(runtime.store.roles),
            len(runtime.store.permissions),
            len(runtime.store.role_permissions),
        )
        seed_defaults(runtime.store)
        assert counts == (
            len(runtime.store.roles),
            len(runtime.store.permissions),
            len(runtime.store.role_permissions),
        )


class TestResolve:
    """Tests for PermissionResolver.resolve."""

    def test_user_role_permissions(self, runtime, make_user):
        user = make_user()
        effective = runtime.permissions.resolve(user.id)

        assert effective.role_names == {"User"}
        assert effective.permission_names == {"View Project", "Create Task", "Edit Task", "View Task"}

    def test_union_across_roles(self, runtime, make_user):
        user = make_user()
        runtime.permissions.grant_role(user.id, "Manager")

        effective = runtime.permissions.resolve(user.id)

        assert effective.role_names == {"User", "Manager"}
        assert "Delete Project" in effective.permission_names
        assert "Manage Users" not in effective.permission_names

    def test_admin_has_everything(self, runtime, make_user):
        user = make_user(role="Admin")
        effective = runtime.permissions.resolve(user.id)
        assert effective.permission_names == set(DEFAULT_PERMISSIONS)

    def test_no_roles(self, runtime, make_user):
        user = make_user(role=None)
        effective = runtime.permissions.resolve(user.id)
        assert effective.role_names == frozenset()
        assert effective.permission_names == frozenset()

    def test_dangling_role_assignment_is_skipped(self, runtime, make_user):
        user = make_user()
        runtime.store.create_role_assignment(user.id, "role-that-does-not-exist")

        effective = runtime.permissions.resolve(user.id)

        assert effective.role_names == {"User"}

    def test_dangling_permission_edge_is_skipped(self, runtime, make_user):
        user = make_user()
        role = runtime.store.find_role_by_name("User")
        runtime.store.create_role_permission(role.id, "permission-that-does-not-exist")

        effective = runtime.permissions.resolve(user.id)

        assert len(effective.permission_names) == 4

    def test_revocation_is_visible_immediately(self, runtime, make_user):
        user = make_user()
        runtime.permissions.grant_role(user.id, "Admin")
        assert "Manage Users" in runtime.permissions.resolve(user.id).permission_names

        assert runtime.permissions.revoke_role(user.id, "Admin") is True

        assert "Manage Users" not in runtime.permissions.resolve(user.id).permission_names


class TestGrantRole:
    def test_grant_is_idempotent(self, runtime, make_user):
        user = make_user()
        runtime.permissions.grant_role(user.id, "User")
        runtime.permissions.grant_role(user.id, "User")

        assert len(runtime.store.find_role_assignments_by_user(user.id)) == 1

    def test_unknown_role(self, runtime, make_user):
        user = make_user()
        with pytest.raises(NotFoundError):
            runtime.permissions.grant_role(user.id, "Overlord")

    def test_unknown_user(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.permissions.grant_role("missing-user", "User")

    def test_revoke_unknown_role(self, runtime, make_user):
        user = make_user()
        assert runtime.permissions.revoke_role(user.id, "Overlord") is False


def test_allows_is_subset_check():
    effective = EffectivePermissions(
        role_names=frozenset({"User"}),
        permission_names=frozenset({"View Task", "Edit Task"}),
    )
    assert effective.allows({"View Task"})
    assert effective.allows(set())
    assert not effective.allows({"View Task", "Delete Task"})
