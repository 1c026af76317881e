from __future__ import annotations

from typing import Iterable, List

from apitemplate.logging import get_logger
from apitemplate.service.errors import ConflictError, NotFoundError, ValidationError
from apitemplate.storage.errors import ConstraintViolation
from apitemplate.storage.models import Permission, Role

logger = get_logger(__name__)


class RoleService:
    def __init__(self, store) -> None:
        self.store = store

    def create_role(self, name: str, permission_ids: Iterable[int] = ()) -> Role:
        try:
            role = self.store.create_role(name, list(permission_ids))
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "name":
                raise ConflictError("role name already taken", detail=exc.detail) from exc
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info("role_created", role_id=role.id)
        return role

    def get_role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found")
        return role

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def update_role(self, role_id: int, name: str) -> Role:
        try:
            role = self.store.update_role(role_id, name)
        except ConstraintViolation as exc:
            raise ConflictError("role name already taken", detail=exc.detail) from exc
        if not role:
            raise NotFoundError("role not found")
        return role

    def delete_role(self, role_id: int) -> None:
        if not self.store.delete_role(role_id):
            raise NotFoundError("role not found")
        logger.info("role_deleted", role_id=role_id)

    def get_permissions(self, role_id: int) -> List[Permission]:
        return self.get_role(role_id).permissions

    def set_permissions(self, role_id: int, permission_ids: Iterable[int]) -> Role:
        try:
            role = self.store.set_role_permissions(role_id, list(permission_ids))
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if not role:
            raise NotFoundError("role not found")
        logger.info(
            "role_permissions_updated",
            role_id=role_id,
            permission_ids=[p.id for p in role.permissions],
        )
        return role

    # permissions

    def create_permission(self, name: str) -> Permission:
        try:
            permission = self.store.create_permission(name)
        except ConstraintViolation as exc:
            raise ConflictError("permission name already taken", detail=exc.detail) from exc
        logger.info("permission_created", permission_id=permission.id)
        return permission

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def delete_permission(self, permission_id: int) -> None:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError("permission not found")
        logger.info("permission_deleted", permission_id=permission_id)
