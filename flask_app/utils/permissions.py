# flask_app/utils/permissions.py

ADMIN_ROLES = frozenset({"admin", "system_admin", "district_admin", "school_admin"})
GLOBAL_ROLES = frozenset({"admin", "system_admin"})


def is_directory_admin(user):
    """Check if user holds any directory administration role"""
    if not user or not user.is_authenticated:
        return False
    if user.is_super_admin:
        return True
    return (user.directory_role or "") in ADMIN_ROLES


def user_can_access_scope(user, school_id=None, district_id=None):
    """
    Check whether a user's tenant scope covers a record's scope.

    Super admins and global roles see every scope. District admins match on
    district; school admins match on school.
    """
    if not is_directory_admin(user):
        return False

    if user.is_super_admin or user.directory_role in GLOBAL_ROLES:
        return True

    if user.directory_role == "district_admin":
        return bool(user.district_id) and district_id == user.district_id

    if user.directory_role == "school_admin":
        return bool(user.school_id) and school_id == user.school_id

    return False


def default_scope_for(user):
    """Scope implied by the user's own assignment, used when a request omits one"""
    if not user or not user.is_authenticated:
        return {}
    if user.directory_role == "school_admin" and user.school_id:
        return {"school_id": user.school_id, "district_id": user.district_id}
    if user.directory_role == "district_admin" and user.district_id:
        return {"school_id": None, "district_id": user.district_id}
    return {}

