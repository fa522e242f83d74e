from __future__ import annotations

from typing import Annotated, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, PositiveInt

MemberT = TypeVar("MemberT")
ValueT = TypeVar("ValueT")

# Body ids must be JSON integers; no coercion from bools or strings.
MemberId = Annotated[int, Field(strict=True, gt=0)]


class User(BaseModel):
    id: str
    name: str
    email: str
    email_verified: bool = False
    image: str | None = None
    created_at: str
    updated_at: str


class Role(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None = None
    created_at: str
    updated_at: str


class Permission(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None = None
    created_at: str
    updated_at: str


class MembershipResponse(BaseModel, Generic[MemberT]):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: int | str = Field(..., alias="ownerId")
    members: list[MemberT] = Field(default_factory=list)


class UserDetail(BaseModel):
    user: User
    roles: list[Role]
    permissions: list[Permission]


class DeletedRole(BaseModel):
    id: int


class Envelope(BaseModel, Generic[ValueT]):
    ok: Literal[True] = True
    value: ValueT


class AuditEvent(BaseModel):
    event_id: int
    request_id: str | None = None
    occurred_at: str
    method: str
    path: str
    action: str
    permission: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    auth_subject: str | None = None
    status: str
    message: str | None = None


# Use-case inputs. Route handlers pass plain dicts through ``parse_with``.


class CreateUserInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    image: HttpUrl | None = None


class UpdateUserInput(BaseModel):
    id: str = Field(..., min_length=1)
    name: str | None = Field(default=None, min_length=1, max_length=120)
    image: HttpUrl | None = None


class SyncUserRolesInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    role_ids: list[MemberId] = Field(default_factory=list, alias="roleIds")


class AddUserRolesInput(SyncUserRolesInput):
    role_ids: list[MemberId] = Field(..., min_length=1, alias="roleIds")


class RemoveUserRolesInput(SyncUserRolesInput):
    role_ids: list[MemberId] = Field(..., min_length=1, alias="roleIds")


class CreateRoleInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: str | None = None


class UpdateRoleInput(BaseModel):
    id: PositiveInt
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = None


class UpdateRoleNameInput(BaseModel):
    id: PositiveInt
    name: str = Field(..., min_length=1, max_length=50)


class SyncRolePermissionsInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: PositiveInt
    permission_ids: list[MemberId] = Field(default_factory=list, alias="permissionIds")


class AddRolePermissionsInput(SyncRolePermissionsInput):
    permission_ids: list[MemberId] = Field(..., min_length=1, alias="permissionIds")


class RemoveRolePermissionsInput(SyncRolePermissionsInput):
    permission_ids: list[MemberId] = Field(..., min_length=1, alias="permissionIds")


class UpdatePermissionInput(BaseModel):
    id: PositiveInt
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = None


class SeedPermission(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    slug: str = Field(..., min_length=1, max_length=50)
    description: str | None = None
