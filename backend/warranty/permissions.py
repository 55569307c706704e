"""
Actor Roles and Permission Checks

WHY: Authentication happens upstream (gateway); the core only receives the
acting identity and its role and decides whether the role may perform an
action. All role/action mappings are defined here.

DESIGN PRINCIPLES:
- One action code per use case
- Least privilege: customers act only on their own claims
- Admin may perform every staff action
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ForbiddenError, ValidationError


class Role:
    ADMIN = "admin"
    TECHNICIAN = "technician"
    QC = "qc"
    CUSTOMER = "customer"
    SYSTEM = "system"


ALL_ROLES = {Role.ADMIN, Role.TECHNICIAN, Role.QC, Role.CUSTOMER, Role.SYSTEM}
STAFF_ROLES = {Role.ADMIN, Role.TECHNICIAN, Role.QC}


# Action code -> roles allowed to perform it
ACTION_ROLES = {
    "GENERATE_BARCODES": {Role.ADMIN},
    "MANAGE_BARCODES": {Role.ADMIN},
    "VIEW_BARCODES": {Role.ADMIN},
    "REGISTER_WARRANTY": {Role.CUSTOMER},
    "SUBMIT_CLAIM": {Role.CUSTOMER},
    "VIEW_CLAIMS": STAFF_ROLES,
    "UPDATE_CLAIM_NOTES": {Role.ADMIN},
    "VALIDATE_CLAIM": {Role.ADMIN},
    "REJECT_CLAIM": {Role.ADMIN},
    "ASSIGN_TECHNICIAN": {Role.ADMIN},
    "START_REPAIR": {Role.TECHNICIAN, Role.ADMIN},
    "REQUEST_QC": {Role.TECHNICIAN},
    "COMPLETE_CLAIM": {Role.QC, Role.ADMIN},
    "FAIL_QC": {Role.QC},
    "HOLD_CLAIM": {Role.ADMIN},
    "RESUME_CLAIM": {Role.ADMIN},
    "CANCEL_CLAIM": {Role.CUSTOMER, Role.ADMIN},
    "WORK_TICKET": {Role.TECHNICIAN, Role.ADMIN},
    "RECORD_QC": {Role.QC, Role.ADMIN},
    "UPLOAD_ATTACHMENT": {Role.CUSTOMER, Role.ADMIN, Role.TECHNICIAN, Role.QC},
    "APPROVE_ATTACHMENT": {Role.ADMIN},
    "SET_SCAN_STATUS": {Role.SYSTEM},
    "VIEW_STATS": {Role.ADMIN},
}


@dataclass(frozen=True)
class Actor:
    """Authenticated identity making the request (as asserted by the gateway)."""

    actor_id: str
    role: str

    def __post_init__(self):
        if not self.actor_id or not str(self.actor_id).strip():
            raise ValidationError("actor id is required")
        if self.role not in ALL_ROLES:
            raise ForbiddenError(f"Unknown role '{self.role}'")

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(actor_id=name, role=Role.SYSTEM)


def require_action(actor: Actor, action: str) -> None:
    """
    Raise ForbiddenError unless the actor's role may perform the action.

    Raises:
        ForbiddenError: role not allowed (403)
    """
    allowed = ACTION_ROLES.get(action)
    if allowed is None:
        raise KeyError(f"Unknown action code: {action}")
    if actor.role not in allowed:
        raise ForbiddenError(
            f"Role '{actor.role}' may not perform {action}",
            details={"required_roles": sorted(allowed)},
        )
