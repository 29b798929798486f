from __future__ import annotations

from typing import Dict, Optional, Tuple

from taskauth.config import Settings
from taskauth.logging import get_logger
from taskauth.middleware import Authenticator
from taskauth.service.accounts import AccountService
from taskauth.service.oauth import OAuthReconciler
from taskauth.service.permissions import PermissionResolver
from taskauth.service.sessions import SessionManager
from taskauth.service.tokens import TokenService
from taskauth.storage.memory import MemoryStore

logger = get_logger(__name__)

ROLE_ADMIN = "Admin"
ROLE_MANAGER = "Manager"
ROLE_USER = "User"

DEFAULT_PERMISSIONS: Dict[str, str] = {
    "Manage Users": "List users, assign roles and block accounts",
    "Manage Roles": "Create roles and edit their permissions",
    "View Users": "Read other users' profiles",
    "Create Project": "Create projects",
    "Edit Project": "Edit projects",
    "Delete Project": "Delete projects",
    "View Project": "Read projects",
    "Create Task": "Create tasks",
    "Edit Task": "Edit tasks",
    "Delete Task": "Delete tasks",
    "View Task": "Read tasks",
}

DEFAULT_ROLES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    ROLE_ADMIN: ("Full administrative access", tuple(DEFAULT_PERMISSIONS)),
    ROLE_MANAGER: (
        "Manages projects and the tasks inside them",
        (
            "View Users",
            "Create Project",
            "Edit Project",
            "Delete Project",
            "View Project",
            "Create Task",
            "Edit Task",
            "Delete Task",
            "View Task",
        ),
    ),
    ROLE_USER: (
        "Works on assigned tasks",
        ("View Project", "Create Task", "Edit Task", "View Task"),
    ),
}


def seed_defaults(store: MemoryStore) -> None:
    """Create the default roles, permissions and their edges when missing."""
    for name, description in DEFAULT_PERMISSIONS.items():
        if store.find_permission_by_name(name) is None:
            store.create_permission(name, description)
    for role_name, (description, permission_names) in DEFAULT_ROLES.items():
        role = store.find_role_by_name(role_name) or store.create_role(role_name, description)
        for permission_name in permission_names:
            permission = store.find_permission_by_name(permission_name)
            if permission is not None:
                store.create_role_permission(role.id, permission.id)
    logger.info("default_roles_seeded", roles=sorted(DEFAULT_ROLES))


class Runtime:
    """Wires the store and the auth services for one application instance."""

    def __init__(self, settings: Settings, store: Optional[MemoryStore] = None) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            persist_store=settings.persist_store,
            test_mode=settings.test_mode,
        )
        try:
            self.store = store or MemoryStore(
                fs_root=settings.data_root if settings.persist_store else None,
                encryption_key=settings.store_encryption_key,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        seed_defaults(self.store)

        self.permissions = PermissionResolver(self.store)
        self.tokens = TokenService(self.store, settings, self.permissions)
        self.sessions = SessionManager(self.store, self.tokens)
        self.oauth = OAuthReconciler(self.store, settings, self.permissions, self.sessions)
        self.accounts = AccountService(self.store, settings, self.permissions, self.sessions)
        self.authenticator = Authenticator(
            self.store, self.tokens, self.sessions, self.permissions
        )
        logger.info(
            "runtime_initialized",
            oauth_providers=self.oauth.configured_providers(),
        )
