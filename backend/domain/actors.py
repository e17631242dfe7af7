"""
Actor descriptor handed to the core by the identity layer.

Role checks are capability checks against a closed set of role tags,
performed at the entry of each operation.
"""

from dataclasses import dataclass

from domain.enums import Role
from domain.errors import PermissionDeniedError, RoleNotApprovedError


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: Role = Role.STUDENT
    delivery_approved: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_delivery_agent(self) -> bool:
        return self.role == Role.DELIVERY


def require_delivery_role(actor: Actor, *, approved: bool = False) -> None:
    """
    Gate agent-facing delivery operations.

    Raises PermissionDeniedError for non-delivery roles and, when
    `approved` is requested, RoleNotApprovedError for unapproved agents.
    """
    if not actor.is_delivery_agent:
        raise PermissionDeniedError("Access denied. Delivery role required.")
    if approved and not actor.delivery_approved:
        raise RoleNotApprovedError(actor.actor_id)
