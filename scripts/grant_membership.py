from __future__ import annotations

import argparse
import asyncio
import sys

from projectgate.domain.access import normalize_module, normalize_role
from projectgate.persistence.db import SessionLocal
from projectgate.persistence.repos import memberships as memberships_repo
from projectgate.persistence.repos import users as users_repo
from projectgate.services.audit import OUTCOME_ALLOW, DatabaseAuditSink, DecisionLogger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Add a principal to a project, optionally with a module grant")
    parser.add_argument("--subject", required=True, help="Identity subject of an existing principal")
    parser.add_argument("--project", required=True, help="Project identifier")
    parser.add_argument("--role", required=True, help="Project role: admin|staff|contractor|viewer")
    parser.add_argument("--create-project", metavar="NAME", default=None, help="Create the project if missing")
    parser.add_argument("--module", default=None, help="Module to grant, e.g. BUDGET or change-orders")
    parser.add_argument(
        "--grant",
        default="",
        help="Comma-separated grant flags: view,edit,upload,request (empty removes every capability)",
    )
    return parser


def _grant_flags(raw: str) -> dict[str, bool]:
    requested = {part.strip().lower() for part in raw.split(",") if part.strip()}
    unknown = requested - {"view", "edit", "upload", "request"}
    if unknown:
        raise ValueError(f"Unsupported grant flags: {', '.join(sorted(unknown))}")
    return {
        "can_view": "view" in requested,
        "can_edit": "edit" in requested,
        "can_upload": "upload" in requested,
        "can_request": "request" in requested,
    }


async def _grant(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    module = normalize_module(args.module) if args.module else None
    flags = _grant_flags(args.grant) if module is not None else {}

    async with SessionLocal() as session:
        user = await users_repo.get_user_by_subject(session, args.subject)
        if user is None:
            raise ValueError("No principal exists for this subject; run create_principal first")
        project = await memberships_repo.get_project(session, args.project)
        if project is None:
            if not args.create_project:
                raise ValueError("Project does not exist; pass --create-project NAME to create it")
            project = await memberships_repo.create_project(session, name=args.create_project, project_id=args.project)
        _membership, created = await memberships_repo.upsert_membership(
            session, user_id=user.id, project_id=project.id, role=role.value
        )
        if module is not None:
            await memberships_repo.upsert_grant(
                session, user_id=user.id, project_id=project.id, module=module.value, **flags
            )
        await session.commit()
        user_id, project_id = user.id, project.id

    audit = DecisionLogger(DatabaseAuditSink())
    await audit.log_event(
        event_type="membership.created" if created else "membership.updated",
        outcome=OUTCOME_ALLOW,
        actor_type="system",
        principal_id="grant_membership",
        actor_role="system",
        tenant_id=project_id,
        resource_type="project_member",
        resource_id=user_id,
        reason="Membership provisioned from the command line",
        metadata={"role": role.value},
    )
    if module is not None:
        await audit.log_event(
            event_type="module_grant.updated",
            outcome=OUTCOME_ALLOW,
            actor_type="system",
            principal_id="grant_membership",
            actor_role="system",
            tenant_id=project_id,
            module=module.value,
            resource_type="module_grant",
            resource_id=user_id,
            reason="Module grant provisioned from the command line",
            metadata=flags,
        )

    print("Membership created:" if created else "Membership updated:")
    print(f"  project: {project_id}")
    print(f"  user_id: {user_id}")
    print(f"  role: {role.value}")
    if module is not None:
        enabled = [name for name, value in flags.items() if value]
        print(f"  grant: {module.value} {', '.join(enabled) or '(none)'}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_grant(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"grant_membership failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
