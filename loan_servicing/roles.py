"""
Role-Based Permissions

Fixed role set of the lending back office and the permission table that
gates discounts, cancellations, refinancing and voiding.
"""

from enum import Enum
from typing import Dict, Optional, Set, Union

from .errors import PermissionDeniedError


class Role(Enum):
    """Back-office roles (values match the stored role ids)"""
    SUPERADMIN = 0
    ADMIN = 1
    COLLECTOR = 2

    @classmethod
    def parse(cls, value: Union['Role', int, str, None]) -> Optional['Role']:
        """Accept a Role, its numeric id or its name"""
        if value is None or isinstance(value, Role):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.upper()]
            except KeyError:
                raise PermissionDeniedError(f"Unknown role: {value}")
        try:
            return cls(int(value))
        except ValueError:
            raise PermissionDeniedError(f"Unknown role: {value}")


class Permission(Enum):
    """Servicing permissions"""
    CREATE_CREDIT = "create_credit"
    EDIT_CREDIT = "edit_credit"
    APPLY_PAYMENT = "apply_payment"
    DISCOUNT_PENALTY = "discount_penalty"
    DISCOUNT_TOTAL = "discount_total"
    DISCOUNT_ORIGINATION_INTEREST = "discount_origination_interest"
    CANCEL_CREDIT = "cancel_credit"
    DISCOUNT_CANCELLATION = "discount_cancellation"
    REFINANCE_CREDIT = "refinance_credit"
    REFINANCE_MANUAL_RATE = "refinance_manual_rate"
    VOID_CREDIT = "void_credit"


ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.SUPERADMIN: set(Permission),
    Role.ADMIN: {
        Permission.CREATE_CREDIT,
        Permission.EDIT_CREDIT,
        Permission.APPLY_PAYMENT,
        Permission.DISCOUNT_PENALTY,
        Permission.CANCEL_CREDIT,
        Permission.REFINANCE_CREDIT,
        Permission.VOID_CREDIT,
    },
    Role.COLLECTOR: {
        Permission.APPLY_PAYMENT,
    },
}


def has_permission(role: Optional[Role], permission: Permission) -> bool:
    """Check if a role holds a permission"""
    if role is None:
        return False
    return permission in ROLE_PERMISSIONS.get(role, set())


def require_permission(role: Optional[Role], permission: Permission,
                       message: Optional[str] = None) -> None:
    """Raise PermissionDeniedError unless the role holds the permission"""
    if not has_permission(role, permission):
        role_name = role.name if role else "anonymous"
        raise PermissionDeniedError(
            message or f"Role {role_name} is not allowed to {permission.value.replace('_', ' ')}",
            details={"permission": permission.value, "role": role_name}
        )
