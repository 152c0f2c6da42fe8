from __future__ import annotations

import argparse
import asyncio
import sys

from projectgate.domain.access import normalize_role
from projectgate.persistence.db import SessionLocal
from projectgate.persistence.repos import users as users_repo
from projectgate.services.audit import OUTCOME_ALLOW, DatabaseAuditSink, DecisionLogger


def _build_parser() -> argparse.ArgumentParser:
    # Principals are provisioned by operators; a first login never creates one.
    parser = argparse.ArgumentParser(description="Create or update a local principal for an identity subject")
    parser.add_argument("--subject", required=True, help="Subject claim issued by the identity provider")
    parser.add_argument("--role", required=True, help="Global role: admin|staff|contractor|viewer")
    parser.add_argument("--email", default=None, help="Optional contact email")
    parser.add_argument("--inactive", action="store_true", help="Create the principal deactivated")
    return parser


async def _create_principal(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    async with SessionLocal() as session:
        user = await users_repo.get_user_by_subject(session, args.subject)
        created = user is None
        if user is None:
            user = await users_repo.create_user(
                session,
                external_subject=args.subject,
                role=role.value,
                email=args.email,
                is_active=not args.inactive,
            )
        else:
            await users_repo.update_user(
                session,
                user,
                role=role.value,
                email=args.email,
                is_active=not args.inactive,
            )
        await session.commit()
        user_id = user.id

    # Record provisioning for security investigations.
    audit = DecisionLogger(DatabaseAuditSink())
    await audit.log_event(
        event_type="principal.created" if created else "principal.updated",
        outcome=OUTCOME_ALLOW,
        actor_type="system",
        principal_id="create_principal",
        actor_role="system",
        resource_type="principal",
        resource_id=user_id,
        reason="Principal provisioned from the command line",
        metadata={"role": role.value, "is_active": not args.inactive},
    )

    print("Principal created:" if created else "Principal updated:")
    print(f"  id: {user_id}")
    print(f"  subject: {args.subject}")
    print(f"  role: {role.value}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_principal(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_principal failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
