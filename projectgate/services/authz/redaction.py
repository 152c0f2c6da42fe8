from __future__ import annotations

from typing import Any, Iterable, Mapping

from projectgate.domain.access import Module, Role


_GENERIC_COST_FIELDS = frozenset({"unit_cost", "total_cost", "cost", "amount", "value"})

_BUDGET_COST_FIELDS = frozenset(
    {
        "est_unit_cost",
        "est_total",
        "committed_total",
        "paid_to_date",
        "variance",
        "variance_amount",
        "variance_percent",
    }
) | _GENERIC_COST_FIELDS

_PROCUREMENT_COST_FIELDS = frozenset({"unit_cost", "total_cost"}) | _GENERIC_COST_FIELDS

# Viewers never see monetary or compensation fields on any module.
_VIEWER_SENSITIVE_FIELDS = frozenset({"price", "rate", "salary"}) | _BUDGET_COST_FIELDS | _PROCUREMENT_COST_FIELDS


def _build_redaction_table() -> dict[tuple[Role, Module], frozenset[str]]:
    table: dict[tuple[Role, Module], frozenset[str]] = {}
    for module in Module:
        table[(Role.ADMIN, module)] = frozenset()
        table[(Role.STAFF, module)] = frozenset()
        table[(Role.VIEWER, module)] = _VIEWER_SENSITIVE_FIELDS
        table[(Role.CONTRACTOR, module)] = frozenset()
    table[(Role.CONTRACTOR, Module.BUDGET)] = _BUDGET_COST_FIELDS
    table[(Role.CONTRACTOR, Module.PROCUREMENT)] = _PROCUREMENT_COST_FIELDS
    return table


REDACTION_FIELDS: dict[tuple[Role, Module], frozenset[str]] = _build_redaction_table()


def redacted_fields(role: Role, module: Module) -> frozenset[str]:
    return REDACTION_FIELDS[(role, module)]


def redact(representation: Mapping[str, Any], role: Role, module: Module) -> dict[str, Any]:
    # Remove fields outright; never zero them, never mutate the input.
    hidden = REDACTION_FIELDS[(role, module)]
    if not hidden:
        return dict(representation)
    return {key: value for key, value in representation.items() if key not in hidden}


def redact_many(
    representations: Iterable[Mapping[str, Any]],
    role: Role,
    module: Module,
) -> list[dict[str, Any]]:
    return [redact(item, role, module) for item in representations]
