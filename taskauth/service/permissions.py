from __future__ import annotations

from dataclasses import dataclass

from taskauth.logging import get_logger
from taskauth.service.errors import NotFoundError
from taskauth.storage.memory import MemoryStore
from taskauth.storage.models import RoleAssignment

logger = get_logger(__name__)


@dataclass(frozen=True)
class EffectivePermissions:
    role_names: frozenset[str]
    permission_names: frozenset[str]

    def allows(self, required: frozenset[str] | set[str]) -> bool:
        return set(required) <= self.permission_names


class PermissionResolver:
    """Computes a user's roles and the union of their permissions.

    Recomputed from the store on every call, so a revoked role or a blocked
    user is visible to the next request. Edges that point at a missing role
    or permission are skipped.
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def resolve(self, user_id: str) -> EffectivePermissions:
        assignments = self.store.find_role_assignments_by_user(user_id)
        roles = {}
        for assignment in assignments:
            role = self.store.find_role_by_id(assignment.role_id)
            if role is None:
                logger.debug("dangling_role_assignment", user_id=user_id, role_id=assignment.role_id)
                continue
            roles[role.id] = role.name
        permission_names: set[str] = set()
        if roles:
            # One batched edge query for all roles
            for edge in self.store.find_role_permissions_by_roles(roles.keys()):
                permission = self.store.find_permission_by_id(edge.permission_id)
                if permission is None:
                    logger.debug(
                        "dangling_role_permission",
                        role_id=edge.role_id,
                        permission_id=edge.permission_id,
                    )
                    continue
                permission_names.add(permission.name)
        return EffectivePermissions(
            role_names=frozenset(roles.values()),
            permission_names=frozenset(permission_names),
        )

    def grant_role(self, user_id: str, role_name: str) -> RoleAssignment:
        """Assign ``role_name``; assigning a role the user already holds is a no-op."""
        role = self.store.find_role_by_name(role_name)
        if role is None:
            raise NotFoundError("role not found", detail={"role": role_name})
        if self.store.find_user_by_id(user_id) is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        assignment = self.store.create_role_assignment(user_id, role.id)
        logger.info("role_granted", user_id=user_id, role=role_name)
        return assignment

    def revoke_role(self, user_id: str, role_name: str) -> bool:
        role = self.store.find_role_by_name(role_name)
        if role is None:
            return False
        removed = self.store.delete_role_assignment(user_id, role.id)
        if removed:
            logger.info("role_revoked", user_id=user_id, role=role_name)
        return removed
