from typing import Annotated, Optional

from fastapi import Header, HTTPException, status

from src.core.approvals.models import Actor, ScopeRole, SystemRole


class HeaderIdentityResolver:
    """Builds the calling ``Actor`` from trusted upstream headers.

    Authentication happens in front of this service; the gateway forwards
    ``X-Actor-Id``, ``X-Actor-Role`` and ``X-Actor-Scope-Roles`` (a comma
    separated list of ``scope:ROLE`` pairs).
    """

    def __call__(
        self,
        actor_id: Annotated[
            Optional[str],
            Header(
                alias="X-Actor-Id",
                description="Authenticated caller identifier.",
                examples=["usr_mgr_1"],
            ),
        ] = None,
        actor_role: Annotated[
            Optional[str],
            Header(
                alias="X-Actor-Role",
                description="Organization-wide system role of the caller.",
                examples=["manager"],
            ),
        ] = None,
        scope_roles: Annotated[
            Optional[str],
            Header(
                alias="X-Actor-Scope-Roles",
                description="Comma separated scope:ROLE assignments of the caller.",
                examples=["prj_apollo:MANAGER,prj_zeus:LEAD"],
            ),
        ] = None,
    ) -> Actor:
        if not actor_id or not actor_id.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="ACTOR_IDENTITY_REQUIRED",
            )
        if not actor_role or not actor_role.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="ACTOR_ROLE_REQUIRED",
            )
        try:
            system_role = SystemRole(actor_role.strip().lower())
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="ACTOR_ROLE_INVALID",
            ) from exc
        return Actor(
            actor_id=actor_id.strip(),
            system_role=system_role,
            scope_roles=parse_scope_roles(scope_roles),
        )


def parse_scope_roles(raw: Optional[str]) -> dict[str, list[ScopeRole]]:
    assignments: dict[str, list[ScopeRole]] = {}
    if not raw:
        return assignments
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        scope_id, _, role = item.rpartition(":")
        try:
            scope_role = ScopeRole(role.strip().upper())
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="ACTOR_SCOPE_ROLES_INVALID",
            ) from exc
        if not scope_id.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="ACTOR_SCOPE_ROLES_INVALID",
            )
        roles = assignments.setdefault(scope_id.strip(), [])
        if scope_role not in roles:
            roles.append(scope_role)
    return assignments


resolve_actor = HeaderIdentityResolver()
