"""Administration package: users and categories."""

from receipt_desk.admin.categories import CategoryService
from receipt_desk.admin.users import UserAdminService

__all__ = ["CategoryService", "UserAdminService"]
