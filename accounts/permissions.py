"""Custom permissions for the application"""
from rest_framework import permissions


class IsAuthenticated(permissions.BasePermission):
    """
    Permission to only allow authenticated users.
    """

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated)


class IsManager(permissions.BasePermission):
    """
    Permission to only allow building managers (superusers included).
    """

    def has_permission(self, request, view):
        return bool(
            request.user and
            request.user.is_authenticated and
            (request.user.is_manager or request.user.is_superuser)
        )


class IsManagerOrTenant(permissions.BasePermission):
    """
    Permission to allow either managers or resident payers.
    """

    def has_permission(self, request, view):
        user = request.user
        return bool(
            user and
            user.is_authenticated and
            (user.is_manager or user.is_tenant or user.is_superuser)
        )


class IsSuperAdmin(permissions.BasePermission):
    """
    Permission to only allow platform superusers.
    """

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and request.user.is_superuser)

