"""
Access Policy Guard.

Two independent authority sources decide access: the global role on User and the
per-venue role on VenueMembership. The global super_admin role is checked first and
bypasses venue scoping; otherwise the venue-local role alone governs.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional

from sqlalchemy.orm import Session

from src.reporting.engine.audit import AuditRecorder
from src.reporting.engine.errors import ForbiddenError, NotFoundError
from src.reporting.logging_config import get_logger
from src.reporting.models.enums import AuditAction, Capability, UserRole
from src.reporting.models.orm_models import User, Venue, VenueMembership

logger = get_logger(__name__)

ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)

ROLE_CAPABILITIES = {
    UserRole.SUPER_ADMIN: ALL_CAPABILITIES,
    UserRole.VENUE_ADMIN: frozenset({Capability.READ, Capability.WRITE, Capability.MANAGE_GOALS}),
    UserRole.STAFF: frozenset({Capability.READ, Capability.WRITE}),
}


@dataclass(frozen=True)
class AccessDecision:
    """Returned when access is allowed."""
    user_id: int
    venue_id: Optional[int]
    role: UserRole
    capability: Optional[Capability]
    via_global_role: bool


def capabilities_for(role) -> FrozenSet[Capability]:
    try:
        return ROLE_CAPABILITIES[UserRole(role)]
    except ValueError:
        return frozenset()


class AccessPolicyGuard:
    """Authorizes engine operations for a user against a venue."""

    def __init__(self, session: Session):
        self.session = session

    def _active_user(self, user_id: Optional[int], venue_id: Optional[int], capability) -> User:
        user = self.session.get(User, user_id) if user_id is not None else None
        if user is None or not user.is_active:
            raise ForbiddenError(
                "User is unknown or deactivated",
                details={"user_id": user_id, "venue_id": venue_id, "capability": getattr(capability, "value", capability)},
            )
        return user

    def effective_role(self, user: User, venue_id: int) -> Optional[UserRole]:
        """Global super_admin first, then the venue membership role, else None."""
        if user.role == UserRole.SUPER_ADMIN.value:
            return UserRole.SUPER_ADMIN
        membership = self.session.get(VenueMembership, (user.id, venue_id))
        if membership is None:
            return None
        return UserRole(membership.role)

    def authorize(self, user_id: Optional[int], venue_id: int, required_capability: Capability) -> AccessDecision:
        """
        Allow or deny a capability on a venue.

        Raises:
            ForbiddenError: unknown/deactivated user, no membership, or role lacks the capability.
        """
        capability = Capability(required_capability)
        user = self._active_user(user_id, venue_id, capability)
        role = self.effective_role(user, venue_id)
        denial = {"user_id": user_id, "venue_id": venue_id, "capability": capability.value}
        if role is None:
            raise ForbiddenError("User has no role at this venue", details=denial)
        if capability not in capabilities_for(role):
            raise ForbiddenError(f"Role '{role.value}' lacks capability '{capability.value}'",
                                 details={**denial, "role": role.value})
        return AccessDecision(
            user_id=user.id,
            venue_id=venue_id,
            role=role,
            capability=capability,
            via_global_role=role is UserRole.SUPER_ADMIN,
        )

    def require_global_role(self, user_id: Optional[int], role: UserRole = UserRole.SUPER_ADMIN) -> AccessDecision:
        """Guard for catalog and user administration, which is not venue scoped."""
        user = self._active_user(user_id, None, None)
        if user.role != UserRole(role).value:
            raise ForbiddenError("Global role required",
                                 details={"user_id": user_id, "venue_id": None, "required_role": UserRole(role).value})
        return AccessDecision(user.id, None, UserRole(role), None, True)

    def grant_membership(self, user_id: int, venue_id: int, role, acting_user_id: Optional[int],
                         audit: Optional[AuditRecorder] = None) -> VenueMembership:
        """Create or change a user's role at a venue (super_admin only)."""
        self.require_global_role(acting_user_id)
        new_role = UserRole(role)
        if self.session.get(User, user_id) is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        if self.session.get(Venue, venue_id) is None:
            raise NotFoundError("Venue not found", details={"venue_id": venue_id})
        membership = self.session.get(VenueMembership, (user_id, venue_id))
        previous = membership.role if membership is not None else None
        if membership is None:
            membership = VenueMembership(user_id=user_id, venue_id=venue_id, role=new_role.value)
            self.session.add(membership)
        else:
            membership.role = new_role.value
        self.session.flush()
        (audit or AuditRecorder(self.session)).record(
            acting_user_id,
            AuditAction.MEMBERSHIP_GRANT,
            VenueMembership.__tablename__,
            user_id,
            {"user_id": user_id, "venue_id": venue_id, "previous": {"role": previous}, "new": {"role": new_role.value}},
        )
        return membership

    def deactivate_user(self, user_id: int, acting_user_id: Optional[int],
                        audit: Optional[AuditRecorder] = None) -> User:
        """Deactivate a user. Users are never hard-deleted."""
        self.require_global_role(acting_user_id)
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        previous = bool(user.is_active)
        user.is_active = False
        self.session.flush()
        (audit or AuditRecorder(self.session)).record(
            acting_user_id,
            AuditAction.USER_DEACTIVATE,
            User.__tablename__,
            user.id,
            {"previous": {"is_active": previous}, "new": {"is_active": False}},
        )
        logger.info("user_deactivated", user_id=user.id, by=acting_user_id)
        return user


def record_denial(session: Session, error: ForbiddenError) -> None:
    """
    Write the minimal access_denied entry for a refused call.
    Only who/where/what capability is kept; the refused payload is not logged.
    """
    details = {key: error.details.get(key) for key in ("venue_id", "capability", "required_role") if key in error.details}
    user_id = error.details.get("user_id")
    # Unknown users cannot be referenced by the user_id foreign key
    if user_id is not None and session.get(User, user_id) is None:
        details["claimed_user_id"] = user_id
        user_id = None
    AuditRecorder(session).record(user_id, AuditAction.ACCESS_DENIED, None, None, details)
    logger.warning("access_denied", user_id=error.details.get("user_id"), **details)
