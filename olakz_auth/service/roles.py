from __future__ import annotations

from typing import Iterable, Optional, Protocol, Sequence

from olakz_auth.config import ADMIN_ROLE, VALID_ROLES
from olakz_auth.logging import get_logger
from olakz_auth.service.errors import (
    Forbidden,
    NotFound,
    RoleNotAssigned,
    ValidationError,
)
from olakz_auth.service.tokens import AccessClaims, TokenEngine, TokenPair
from olakz_auth.storage.models import Account

logger = get_logger(__name__)


class RoleStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def update_roles(
        self, account_id: str, roles: Sequence[str], active_role: str
    ) -> Optional[Account]: ...

    def set_active_role(self, account_id: str, role: str) -> Optional[Account]: ...


def role_allows(active_role: str, required_role: str) -> bool:
    """Admin satisfies every role requirement; other roles only themselves."""
    if active_role == required_role:
        return True
    return active_role == ADMIN_ROLE


def normalize_roles(roles: Iterable[str]) -> list[str]:
    """De-duplicate preserving order and reject unknown or empty role sets."""
    ordered: list[str] = []
    for role in roles:
        value = (role or "").strip().lower()
        if value and value not in ordered:
            ordered.append(value)
    if not ordered:
        raise ValidationError("at least one role is required")
    unknown = [role for role in ordered if role not in VALID_ROLES]
    if unknown:
        raise ValidationError(
            "unknown role", detail={"roles": unknown, "allowed": list(VALID_ROLES)}
        )
    return ordered


class RoleAuthorizer:
    """Active-role checks, role switching and administrative role assignment."""

    def __init__(self, store: RoleStore, tokens: TokenEngine) -> None:
        self.store = store
        self.tokens = tokens

    def authorize(self, claims: AccessClaims, required_role: str) -> bool:
        return role_allows(claims.role, required_role)

    def require(self, claims: AccessClaims, required_role: str) -> None:
        if not self.authorize(claims, required_role):
            logger.info(
                "role_check_denied",
                account_id=claims.account_id,
                active_role=claims.role,
                required_role=required_role,
            )
            raise Forbidden(
                f"this action requires the '{required_role}' role",
                detail={"required_role": required_role, "active_role": claims.role},
            )

    def switch_active_role(
        self, account: Account, requested_role: str
    ) -> tuple[Account, TokenPair]:
        """Persist a new active role and issue a pair carrying it.

        Access tokens minted before the switch keep their old role until they
        expire.
        """
        role = (requested_role or "").strip().lower()
        if role not in account.roles:
            raise RoleNotAssigned(
                f"role '{role}' is not assigned to this account",
                detail={"role": role, "assigned": list(account.roles)},
            )
        updated = self.store.set_active_role(account.id, role)
        if not updated:
            raise NotFound("account not found")
        pair = self.tokens.issue_token_pair(updated, role)
        logger.info(
            "active_role_switched",
            account_id=account.id,
            previous_role=account.active_role,
            active_role=role,
        )
        return updated, pair

    def update_assigned_roles(
        self,
        actor_claims: AccessClaims,
        target_account_id: str,
        new_roles: Sequence[str],
        active_role: Optional[str] = None,
    ) -> Account:
        # Authorization comes before any lookup so non-admins learn nothing
        if actor_claims.role != ADMIN_ROLE:
            logger.warning(
                "role_update_forbidden",
                actor_id=actor_claims.account_id,
                target_id=target_account_id,
            )
            raise Forbidden("only administrators can change assigned roles")
        roles = normalize_roles(new_roles)
        if active_role is not None:
            active_role = active_role.strip().lower()
            if active_role not in roles:
                raise ValidationError(
                    "active role must be one of the assigned roles",
                    detail={"active_role": active_role, "roles": roles},
                )
        target = self.store.get_account(target_account_id)
        if not target:
            raise NotFound("account not found")
        if active_role is None:
            active_role = target.active_role if target.active_role in roles else roles[0]
        updated = self.store.update_roles(target.id, roles, active_role)
        if not updated:
            raise NotFound("account not found")
        logger.info(
            "assigned_roles_updated",
            actor_id=actor_claims.account_id,
            target_id=target.id,
            roles=roles,
            active_role=active_role,
        )
        return updated

    def add_role(self, account_id: str, role: str) -> Account:
        """Grant ``role`` if missing; the active role is left alone."""
        role = normalize_roles([role])[0]
        account = self.store.get_account(account_id)
        if not account:
            raise NotFound("account not found")
        if role in account.roles:
            return account
        updated = self.store.update_roles(
            account.id, [*account.roles, role], account.active_role
        )
        if not updated:
            raise NotFound("account not found")
        logger.info("role_added", account_id=account.id, role=role)
        return updated


__all__ = ["RoleAuthorizer", "normalize_roles", "role_allows"]
