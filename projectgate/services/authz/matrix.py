from __future__ import annotations

from projectgate.domain.access import ALL_CAPABILITIES, Capability, Intent, Module, Role, role_allows


_VIEW_REQUEST = Capability.VIEW | Capability.REQUEST

# Modules a contractor cannot see by default.
_CONTRACTOR_HIDDEN = frozenset({Module.PROPOSALS, Module.CHANGE_ORDERS})

# Modules whose mutating intents are reserved for elevated roles.
_ELEVATED_WRITE_MODULES = frozenset({Module.PROCUREMENT})
_MUTATING_INTENTS = frozenset({Intent.WRITE, Intent.DELETE, Intent.APPROVE, Intent.UPLOAD})


def _is_elevated(role: Role) -> bool:
    return role_allows(role=role, minimum_role=Role.STAFF)


def _default_for(role: Role, module: Module) -> Capability:
    if _is_elevated(role):
        return ALL_CAPABILITIES
    if role == Role.CONTRACTOR:
        if module in _CONTRACTOR_HIDDEN:
            return Capability.NONE
        return _VIEW_REQUEST
    return Capability.VIEW


# Full role x module product, built once so every pair has an explicit entry.
ROLE_MODULE_DEFAULTS: dict[tuple[Role, Module], Capability] = {
    (role, module): _default_for(role, module) for role in Role for module in Module
}


def default_capabilities(role: Role, module: Module) -> Capability:
    return ROLE_MODULE_DEFAULTS[(role, module)]


def is_role_barred(role: Role, module: Module, intent: Intent) -> bool:
    # Bars apply before grants; an explicit grant can never lift them.
    if _is_elevated(role):
        return False
    if intent == Intent.APPROVE:
        return True
    return module in _ELEVATED_WRITE_MODULES and intent in _MUTATING_INTENTS
