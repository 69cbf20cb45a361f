# freezegate/policy/permissions.py
"""
Permission resolution for freeze commands.

Three roles are supported:

- admin: every command, capability flags are not consulted
- maintainer: freeze family gated by ``can_freeze`` / ``can_unfreeze``
- contributor: read-only (status/help) unless flags say otherwise

Effective permissions are resolved from a YAML snapshot, first match wins:

1. repository-specific entry for the user within the installation
2. installation-wide (``global_users``) entry
3. installation ``default_permissions``
4. deny-all
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from freezegate.freezer.commands import Intent

log = logging.getLogger(__name__)
audit_log = logging.getLogger("freezegate.audit")


class Role(str, Enum):
    ADMIN = "admin"
    MAINTAINER = "maintainer"
    CONTRIBUTOR = "contributor"


class UserPermissions(BaseModel):
    role: Role
    can_freeze: bool = False
    can_unfreeze: bool = False
    can_emergency_override: bool = False

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RepositoryConfig(BaseModel):
    repository: Optional[str] = None
    users: Dict[str, UserPermissions] = Field(default_factory=dict)


class InstallationConfig(BaseModel):
    installation_id: Optional[str] = None
    default_permissions: Optional[UserPermissions] = None
    global_users: Dict[str, UserPermissions] = Field(default_factory=dict)
    repositories: Dict[str, RepositoryConfig] = Field(default_factory=dict)


class PermissionsConfig(BaseModel):
    installations: Dict[str, InstallationConfig] = Field(default_factory=dict)

    @field_validator("installations", mode="before")
    @classmethod
    def _stringify_keys(cls, value):
        # YAML turns unquoted numeric ids into ints
        if isinstance(value, dict):
            return {str(k): v for k, v in value.items()}
        return value

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PermissionsConfig":
        file = Path(path)
        if not file.exists():
            raise FileNotFoundError(str(path))
        raw = yaml.safe_load(file.read_text(encoding="utf-8")) or {}
        config = cls.model_validate(raw)
        log.info(
            "permissions_loaded",
            extra={"path": str(file), "installations": len(config.installations)},
        )
        return config

    def installation(self, installation_id: int) -> Optional[InstallationConfig]:
        return self.installations.get(str(installation_id))


@dataclass(frozen=True)
class EffectivePermission:
    role: Optional[Role]
    can_freeze: bool = False
    can_unfreeze: bool = False
    can_emergency_override: bool = False
    source: str = "none"

    @classmethod
    def deny_all(cls) -> "EffectivePermission":
        return cls(role=None)

    @classmethod
    def from_user(cls, perms: UserPermissions, source: str) -> "EffectivePermission":
        return cls(
            role=perms.role,
            can_freeze=perms.can_freeze,
            can_unfreeze=perms.can_unfreeze,
            can_emergency_override=perms.can_emergency_override,
            source=source,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class Allowed:
    permission: EffectivePermission

    allowed = True


@dataclass(frozen=True)
class PermissionDenied:
    role: Optional[Role]
    missing_capability: str

    allowed = False

    @property
    def reason(self) -> str:
        if self.role is None:
            return "No permissions configured for this user in this repository"
        return f"User role '{self.role.value}' does not have the '{self.missing_capability}' capability"


Decision = Union[Allowed, PermissionDenied]

# capability flag required per mutating intent
REQUIRED_CAPABILITY: Dict[Intent, str] = {
    Intent.FREEZE: "can_freeze",
    Intent.FREEZE_ALL: "can_freeze",
    Intent.SCHEDULE_FREEZE: "can_freeze",
    Intent.UNFREEZE: "can_unfreeze",
    Intent.UNFREEZE_ALL: "can_unfreeze",
    Intent.UNLOCK_PR: "can_unfreeze",
}


def _lookup_user(users: Dict[str, UserPermissions], actor: str) -> Optional[UserPermissions]:
    if actor in users:
        return users[actor]
    lowered = actor.lower()
    for login, perms in users.items():
        if login.lower() == lowered:
            return perms
    return None


def _lookup_repository(inst: InstallationConfig, repository: str) -> Optional[RepositoryConfig]:
    if repository in inst.repositories:
        return inst.repositories[repository]
    lowered = repository.lower()
    for name, repo_cfg in inst.repositories.items():
        if name.lower() == lowered or (repo_cfg.repository or "").lower() == lowered:
            return repo_cfg
    return None


Lookup = Callable[[InstallationConfig, str, str], Optional[EffectivePermission]]


def _repository_entry(inst: InstallationConfig, repository: str, actor: str) -> Optional[EffectivePermission]:
    repo_cfg = _lookup_repository(inst, repository)
    if repo_cfg is None:
        return None
    perms = _lookup_user(repo_cfg.users, actor)
    return EffectivePermission.from_user(perms, "repository") if perms else None


def _global_entry(inst: InstallationConfig, repository: str, actor: str) -> Optional[EffectivePermission]:
    perms = _lookup_user(inst.global_users, actor)
    return EffectivePermission.from_user(perms, "global") if perms else None


def _default_entry(inst: InstallationConfig, repository: str, actor: str) -> Optional[EffectivePermission]:
    if inst.default_permissions is None:
        return None
    return EffectivePermission.from_user(inst.default_permissions, "default")


class PermissionResolver:
    """Pure lookup over an immutable configuration snapshot."""

    chain: Tuple[Lookup, ...] = (_repository_entry, _global_entry, _default_entry)

    def __init__(self, config: PermissionsConfig):
        self._config = config

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PermissionResolver":
        return cls(PermissionsConfig.load(path))

    def resolve(self, installation_id: int, repository: str, actor: str) -> EffectivePermission:
        inst = self._config.installation(installation_id)
        if inst is None:
            return EffectivePermission.deny_all()
        for lookup in self.chain:
            found = lookup(inst, repository, actor)
            if found is not None:
                return found
        return EffectivePermission.deny_all()

    def check(self, installation_id: int, repository: str, actor: str, intent: Intent) -> Decision:
        permission = self.resolve(installation_id, repository, actor)
        decision = authorize(intent, permission)
        log.debug(
            "permission_check",
            extra={
                "actor": actor,
                "repository": repository,
                "intent": intent.value,
                "source": permission.source,
                "allowed": decision.allowed,
            },
        )
        if not decision.allowed:
            audit_log.warning(
                "permission_denied",
                extra={
                    "actor": actor,
                    "installation_id": installation_id,
                    "repository": repository,
                    "intent": intent.value,
                    "role": permission.role.value if permission.role else None,
                    "missing_capability": decision.missing_capability,
                },
            )
        return decision


def authorize(intent: Intent, permission: EffectivePermission) -> Decision:
    if intent == Intent.HELP:
        return Allowed(permission)
    if permission.role is None:
        return PermissionDenied(role=None, missing_capability="role")
    if intent == Intent.STATUS or permission.is_admin:
        return Allowed(permission)
    capability = REQUIRED_CAPABILITY[intent]
    if getattr(permission, capability):
        return Allowed(permission)
    return PermissionDenied(role=permission.role, missing_capability=capability)


__all__ = [
    "Role",
    "UserPermissions",
    "PermissionsConfig",
    "EffectivePermission",
    "PermissionResolver",
    "Allowed",
    "PermissionDenied",
    "authorize",
    "REQUIRED_CAPABILITY",
]
