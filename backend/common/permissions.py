from rest_framework.permissions import BasePermission, SAFE_METHODS

from common.mixins import require_tenant


def is_staff_user(user) -> bool:
    return bool(user and user.is_authenticated and (user.is_staff or user.is_superuser))


class IsAdminOrReadOnly(BasePermission):
    """
    Read for everyone; write only for staff/admin.
    """
    def has_permission(self, request, view):
        if request.method in SAFE_METHODS:
            return True
        return is_staff_user(request.user)


class PrivateTenantOnly(BasePermission):
    """
    All requests must be authenticated AND name a known tenant (X-Tenant-ID header or ?tenant=).
    """
    def has_permission(self, request, view):
        if not (request.user and request.user.is_authenticated):
            return False
        require_tenant(request)
        return True


class StaffTenantOnly(PrivateTenantOnly):
    """Agent/admin surfaces: staff users with a tenant context."""
    def has_permission(self, request, view):
        return super().has_permission(request, view) and is_staff_user(request.user)


class PublicReadStaffWrite(BasePermission):
    """
    Anyone may read (list/retrieve and read-only actions); writes need a staff user.
    Tenant requirement is handled in the ViewSet mixin.
    """
    def has_permission(self, request, view):
        if request.method in SAFE_METHODS:
            return True
        return is_staff_user(request.user)
