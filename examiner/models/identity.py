import uuid
from dataclasses import dataclass, field
from typing import Literal

Role = Literal["super_admin", "institute_admin", "teacher", "student"]

STAFF_ROLES: frozenset[str] = frozenset({"institute_admin", "teacher"})


@dataclass(frozen=True)
class RoleGrant:
    role: str
    institute_id: uuid.UUID | None = None


@dataclass(frozen=True)
class CallerIdentity:
    """Who is asking. Built per request and passed explicitly."""

    user_id: uuid.UUID
    grants: tuple[RoleGrant, ...] = field(default_factory=tuple)

    def has_role(self, role: str, institute_id: uuid.UUID | None = None) -> bool:
        return any(
            grant.role == role and (institute_id is None or grant.institute_id == institute_id)
            for grant in self.grants
        )

    def is_super_admin(self) -> bool:
        return self.has_role("super_admin")


def can_manage_exam(
    caller: CallerIdentity,
    institute_id: uuid.UUID | None,
    created_by: uuid.UUID | None,
) -> bool:
    if caller.is_super_admin():
        return True
    if created_by is not None and created_by == caller.user_id:
        return True
    if institute_id is None:
        return False
    return any(
        grant.role in STAFF_ROLES and grant.institute_id == institute_id
        for grant in caller.grants
    )


def can_evaluate(
    caller: CallerIdentity,
    student_id: uuid.UUID,
    institute_id: uuid.UUID | None,
    created_by: uuid.UUID | None,
) -> bool:
    if student_id == caller.user_id:
        return True
    return can_manage_exam(caller, institute_id, created_by)
