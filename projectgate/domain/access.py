from __future__ import annotations

from enum import Enum, IntFlag


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    CONTRACTOR = "contractor"
    VIEWER = "viewer"


class Module(str, Enum):
    TASKS = "TASKS"
    SCHEDULE = "SCHEDULE"
    BUDGET = "BUDGET"
    PROCUREMENT = "PROCUREMENT"
    CONTACTS = "CONTACTS"
    PROPOSALS = "PROPOSALS"
    CHANGE_ORDERS = "CHANGE_ORDERS"


class Intent(str, Enum):
    READ = "read"
    WRITE = "write"
    UPLOAD = "upload"
    REQUEST = "request"
    EXPORT = "export"
    DELETE = "delete"
    APPROVE = "approve"


class Capability(IntFlag):
    NONE = 0
    VIEW = 1
    EDIT = 2
    UPLOAD = 4
    REQUEST = 8


ALL_CAPABILITIES = Capability.VIEW | Capability.EDIT | Capability.UPLOAD | Capability.REQUEST

# Capability each intent consumes.
INTENT_CAPABILITY: dict[Intent, Capability] = {
    Intent.READ: Capability.VIEW,
    Intent.EXPORT: Capability.VIEW,
    Intent.WRITE: Capability.EDIT,
    Intent.DELETE: Capability.EDIT,
    Intent.APPROVE: Capability.EDIT,
    Intent.UPLOAD: Capability.UPLOAD,
    Intent.REQUEST: Capability.REQUEST,
}

# Human-readable action names used in permission failure messages.
CAPABILITY_ACTION: dict[Capability, str] = {
    Capability.VIEW: "read",
    Capability.EDIT: "write",
    Capability.UPLOAD: "upload",
    Capability.REQUEST: "request",
}

ROLE_ORDER: dict[Role, int] = {
    Role.VIEWER: 1,
    Role.CONTRACTOR: 2,
    Role.STAFF: 3,
    Role.ADMIN: 4,
}


def normalize_role(role: str | Role) -> Role:
    # Enforce a stable, lowercased role vocabulary.
    if isinstance(role, Role):
        return role
    normalized = role.strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def normalize_module(module: str | Module) -> Module:
    if isinstance(module, Module):
        return module
    normalized = module.strip().upper().replace("-", "_")
    try:
        return Module(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported module: {module}") from exc


def role_allows(*, role: Role, minimum_role: Role) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER[role] >= ROLE_ORDER[minimum_role]


def capability_from_flags(*, can_view: bool, can_edit: bool, can_upload: bool, can_request: bool) -> Capability:
    caps = Capability.NONE
    if can_view:
        caps |= Capability.VIEW
    if can_edit:
        caps |= Capability.EDIT
    if can_upload:
        caps |= Capability.UPLOAD
    if can_request:
        caps |= Capability.REQUEST
    return caps
