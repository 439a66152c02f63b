"""
Role/permission model.

Permissions are a closed set of flags (models.Permission) stored per user.
Access decisions go through `allows`, a pure function of role, stored flags
and the requested permission, so it can be tested without a request or a
database.
"""
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, field_validator

from models import Permission, UserRole

logger = logging.getLogger(__name__)

# Managers get these regardless of their stored flags
MANAGER_IMPLICIT_PERMISSIONS = frozenset({Permission.FUNCIONARIOS, Permission.FINANCEIRO})

# Every user can see the dashboard
ALWAYS_GRANTED = frozenset({Permission.DASHBOARD})


class PermissionSet(BaseModel):
    pdv: bool = False
    products: bool = False
    dashboard: bool = True
    reports: bool = False
    estoque: bool = False
    funcionarios: bool = False
    financeiro: bool = False

    @field_validator("dashboard")
    @classmethod
    def _dashboard_always_on(cls, value: bool) -> bool:
        return True

    def has(self, permission: Permission) -> bool:
        if permission in ALWAYS_GRANTED:
            return True
        return bool(getattr(self, permission.value))

    def granted(self) -> set[Permission]:
        return {permission for permission in Permission if self.has(permission)}

    def to_storage(self) -> dict[str, bool]:
        return self.model_dump()


def default_permissions(role: UserRole) -> PermissionSet:
    """Safe starting flags for a newly created account"""
    if role == UserRole.ADMIN:
        return PermissionSet(**{permission.value: True for permission in Permission})
    if role == UserRole.MANAGER:
        return PermissionSet(funcionarios=True, financeiro=True)
    return PermissionSet()


def allows(role: UserRole, flags: PermissionSet, permission: Permission) -> bool:
    """
    Decide whether a user may use a feature.

    - admin: unrestricted
    - manager: implicit funcionarios/financeiro plus stored flags
    - employee: stored flag required
    Dashboard is granted to everyone.
    """
    if permission in ALWAYS_GRANTED:
        return True
    if role == UserRole.ADMIN:
        return True
    if role == UserRole.MANAGER and permission in MANAGER_IMPLICIT_PERMISSIONS:
        return True
    return flags.has(permission)


def effective_permissions(role: UserRole, flags: PermissionSet) -> dict[str, bool]:
    """Flag map as seen by clients, with role grants applied"""
    return {permission.value: allows(role, flags, permission) for permission in Permission}


_FLAG_PATTERN = re.compile(r'"(%s)"\s*:\s*(true|false)' % "|".join(p.value for p in Permission))


def is_malformed(raw: Any) -> bool:
    """True when stored data needs rewriting to the canonical flag map"""
    if raw is None:
        return True
    if isinstance(raw, str):
        return True
    if not isinstance(raw, dict):
        return True
    if any(not isinstance(key, str) or key.isdigit() for key in raw):
        return True
    if set(raw) != {p.value for p in Permission}:
        return True
    if any(not isinstance(value, bool) for value in raw.values()):
        return True
    return raw.get("dashboard") is not True


def repair_permissions(raw: Any) -> PermissionSet:
    """
    Normalize whatever is stored in users.permissions into a PermissionSet.

    Accepts a dict, a JSON string, or a corrupted string (for example a
    character-indexed object like {"0":"{","1":"\"",...,"pdv":true}). Flags
    that cannot be recovered default to False; dashboard is always True.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="ignore")

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            pass

    if isinstance(raw, str):
        # Unparseable: pick out any literal "flag":bool pairs
        return PermissionSet(**{name: value == "true" for name, value in _FLAG_PATTERN.findall(raw)})

    if isinstance(raw, dict):
        known = {p.value for p in Permission}
        flags = {key: value for key, value in raw.items() if key in known and isinstance(value, bool)}
        if any(isinstance(key, str) and key.isdigit() for key in raw):
            # Character-indexed leftovers from double serialization
            joined = "".join(str(raw[key]) for key in sorted((k for k in raw if str(k).isdigit()), key=int))
            for name, value in _FLAG_PATTERN.findall(joined):
                flags.setdefault(name, value == "true")
        return PermissionSet(**flags)

    if raw is not None:
        logger.warning(f"Unexpected permissions payload of type {type(raw).__name__}; using defaults")
    return PermissionSet()
