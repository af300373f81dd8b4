import logging

from rest_framework.permissions import BasePermission

logger = logging.getLogger("security.authorization")


class Role:
    OPERATOR = "operator"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


SUPERVISOR_GROUP = "supervisor"

ROLE_CAPABILITY_MATRIX = {
    "ledger.view": {Role.OPERATOR, Role.SUPERVISOR, Role.ADMIN},
    "delivery.manage": {Role.OPERATOR, Role.SUPERVISOR, Role.ADMIN},
    "production.manage": {Role.OPERATOR, Role.SUPERVISOR, Role.ADMIN},
    "stock.adjust": {Role.SUPERVISOR, Role.ADMIN},
    "stock.repair": {Role.ADMIN},
    "admin.records.manage": {Role.SUPERVISOR, Role.ADMIN},
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser or user.is_staff:
        return Role.ADMIN
    if user.groups.filter(name=SUPERVISOR_GROUP).exists():
        return Role.SUPERVISOR
    return Role.OPERATOR


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
