from __future__ import annotations

import pytest

from projectgate.core.errors import InsufficientPermission, InsufficientRolePrivilege, NoModuleAccess
from projectgate.domain.access import ALL_CAPABILITIES, Capability, Intent, Module, Role
from projectgate.services.authz.matrix import ROLE_MODULE_DEFAULTS, default_capabilities, is_role_barred
from projectgate.services.authz.permissions import SOURCE_GRANT, SOURCE_ROLE_BAR, SOURCE_ROLE_DEFAULT, evaluate


def test_default_matrix_covers_every_role_and_module() -> None:
    assert set(ROLE_MODULE_DEFAULTS) == {(role, module) for role in Role for module in Module}


def test_role_defaults() -> None:
    assert default_capabilities(Role.ADMIN, Module.BUDGET) == ALL_CAPABILITIES
    assert default_capabilities(Role.STAFF, Module.PROCUREMENT) == ALL_CAPABILITIES
    assert default_capabilities(Role.CONTRACTOR, Module.TASKS) == Capability.VIEW | Capability.REQUEST
    assert default_capabilities(Role.CONTRACTOR, Module.PROPOSALS) == Capability.NONE
    assert default_capabilities(Role.CONTRACTOR, Module.CHANGE_ORDERS) == Capability.NONE
    assert default_capabilities(Role.VIEWER, Module.CONTACTS) == Capability.VIEW


@pytest.mark.parametrize("role", [Role.CONTRACTOR, Role.VIEWER])
@pytest.mark.parametrize("intent", [Intent.WRITE, Intent.DELETE, Intent.APPROVE, Intent.UPLOAD])
def test_procurement_mutations_are_barred_for_non_elevated_roles(role: Role, intent: Intent) -> None:
    assert is_role_barred(role, Module.PROCUREMENT, intent)


def test_elevated_roles_are_never_barred() -> None:
    for role in (Role.ADMIN, Role.STAFF):
        for module in Module:
            for intent in Intent:
                assert not is_role_barred(role, module, intent)


def test_approve_requires_elevated_role_on_every_module() -> None:
    assert is_role_barred(Role.CONTRACTOR, Module.TASKS, Intent.APPROVE)
    assert not is_role_barred(Role.CONTRACTOR, Module.TASKS, Intent.WRITE)


def test_bar_wins_over_grant() -> None:
    decision = evaluate(
        role=Role.CONTRACTOR,
        module=Module.PROCUREMENT,
        intent=Intent.WRITE,
        capabilities=ALL_CAPABILITIES,
        source=SOURCE_GRANT,
    )
    assert not decision.allowed
    assert decision.source == SOURCE_ROLE_BAR
    assert isinstance(decision.error, InsufficientRolePrivilege)
    assert decision.reason == "Insufficient role privileges"


def test_empty_capabilities_mean_no_module_access() -> None:
    decision = evaluate(
        role=Role.CONTRACTOR,
        module=Module.PROPOSALS,
        intent=Intent.READ,
        capabilities=Capability.NONE,
        source=SOURCE_ROLE_DEFAULT,
    )
    assert isinstance(decision.error, NoModuleAccess)
    assert decision.reason == "No PROPOSALS access for this project"


def test_missing_flag_is_insufficient_permission() -> None:
    decision = evaluate(
        role=Role.VIEWER,
        module=Module.BUDGET,
        intent=Intent.WRITE,
        capabilities=Capability.VIEW,
        source=SOURCE_ROLE_DEFAULT,
    )
    assert isinstance(decision.error, InsufficientPermission)
    assert decision.reason == "No write permission for BUDGET"


def test_allowed_decision() -> None:
    decision = evaluate(
        role=Role.STAFF,
        module=Module.TASKS,
        intent=Intent.EXPORT,
        capabilities=Capability.VIEW,
        source=SOURCE_GRANT,
    )
    assert decision.allowed
    assert decision.error is None
    assert decision.source == SOURCE_GRANT
