from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from fastapi import Body, FastAPI, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from access import permissions as permission_usecases
from access import roles as role_usecases
from access import users as user_usecases
from access.errors import (
    FORBIDDEN,
    INTERNAL_ERROR,
    UNAUTHORIZED,
    VALIDATION_ERROR,
    DomainError,
    code_for_http_status,
    domain_error_to_http,
    error_envelope,
)
from access.permissions import (
    DEFAULT_PERMISSIONS,
    MANAGE_PERMISSIONS,
    MANAGE_ROLE_PERMISSIONS,
    MANAGE_USERS,
    VIEW_AUDIT_EVENTS,
)
from access.reconciler import MembershipReconciler, MembershipResult
from access.repository import AccessRepository
from access.schemas import (
    AuditEvent,
    DeletedRole,
    Envelope,
    MembershipResponse,
    Permission,
    Role,
    SeedPermission,
    User,
    UserDetail,
)
from access.store import RolePermissionStore, UserRoleStore

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "gatehouse", "access.sqlite3")
WILDCARD_PRINCIPAL = "*"
LOGGER = logging.getLogger("gatehouse.access")

ResultT = TypeVar("ResultT")


def parse_api_tokens(raw: str) -> dict[str, str]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("ACCESS_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, str] = {}
    for token, principal in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if not isinstance(principal, str) or not principal.strip():
            raise ValueError("Token principals must be non-empty user ids.")
        token_map[token.strip()] = principal.strip()
    return token_map


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


def read_bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def membership_response(result: MembershipResult) -> MembershipResponse:
    return MembershipResponse(owner_id=result.owner_id, members=result.members)


def describe_membership(result: MembershipResult) -> str:
    return (
        f"owner_id={result.owner_id}; added={len(result.diff.to_add)}; "
        f"removed={len(result.diff.to_remove)}; attached={len(result.members)}"
    )


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, str] | None = None,
    seed_permissions: Sequence[SeedPermission] | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("ACCESS_DB_PATH", DEFAULT_DB_PATH)
    resolved_api_key = (api_key or os.getenv("ACCESS_API_KEY", "")).strip() or None
    resolved_token_map: dict[str, str] = {}
    if api_tokens is not None:
        resolved_token_map = {
            token.strip(): principal.strip()
            for token, principal in api_tokens.items()
            if token.strip() and principal.strip()
        }
    else:
        raw_tokens = os.getenv("ACCESS_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            resolved_token_map = parse_api_tokens(raw_tokens)

    if resolved_api_key:
        resolved_token_map[resolved_api_key] = WILDCARD_PRINCIPAL

    resolved_seeds = list(DEFAULT_PERMISSIONS if seed_permissions is None else seed_permissions)
    repository = AccessRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        await run_in_threadpool(repository.seed_permissions, resolved_seeds)
        app.state.repository = repository
        app.state.role_permissions = MembershipReconciler(RolePermissionStore(repository))
        app.state.user_roles = MembershipReconciler(UserRoleStore(repository))
        app.state.auth_tokens = resolved_token_map
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Gatehouse Access", version="0.3.0", lifespan=lifespan)

    @app.exception_handler(DomainError)
    async def handle_domain_error(request: Request, exc: DomainError) -> JSONResponse:
        LOGGER.info(
            json.dumps(
                {
                    "event": "domain_error",
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                    "code": exc.code,
                    "message": exc.message,
                },
                default=str,
            )
        )
        return JSONResponse(
            status_code=domain_error_to_http(exc),
            content=jsonable_encoder(error_envelope(exc)),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        error = DomainError("Validation failed", VALIDATION_ERROR, jsonable_encoder(exc.errors()))
        return JSONResponse(status_code=400, content=error_envelope(error))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(
        request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        error = DomainError(str(exc.detail), code_for_http_status(exc.status_code))
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(error),
            headers=getattr(exc, "headers", None),
        )

    async def write_audit_event(
        request: Request,
        *,
        action: str,
        permission: str | None,
        status: str,
        message: str | None = None,
        auth_subject: str | None = None,
    ) -> int:
        request_id = getattr(request.state, "request_id", None)
        source_ip = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")
        return await run_in_threadpool(
            lambda: request.app.state.repository.record_audit_event(
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                action=action,
                permission=permission,
                source_ip=source_ip,
                user_agent=user_agent,
                auth_subject=auth_subject,
                status=status,
                message=message,
            )
        )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "message": "Internal Server Error",
                        "code": INTERNAL_ERROR,
                        "details": {"request_id": request_id},
                    },
                },
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    async def require_permission(
        request: Request,
        *,
        action: str,
        permission: str,
    ) -> str | None:
        token_map: dict[str, str] = request.app.state.auth_tokens
        if not token_map:
            return None

        provided = read_bearer_token(request)
        if not provided:
            await write_audit_event(
                request,
                action=action,
                permission=permission,
                status="unauthorized",
                message="missing bearer token",
            )
            raise DomainError("Unauthorized", UNAUTHORIZED)

        principal = token_map.get(provided)
        if principal is None:
            await write_audit_event(
                request,
                action=action,
                permission=permission,
                status="unauthorized",
                message="unknown bearer token",
            )
            raise DomainError("Unauthorized", UNAUTHORIZED)

        if principal == WILDCARD_PRINCIPAL:
            return build_auth_subject(provided)

        repository: AccessRepository = request.app.state.repository
        user = await run_in_threadpool(repository.get_user, principal)
        if user is None:
            await write_audit_event(
                request,
                action=action,
                permission=permission,
                status="unauthorized",
                message="token user no longer exists",
                auth_subject=f"user:{principal}",
            )
            raise DomainError("Unauthorized", UNAUTHORIZED)

        auth_subject = f"user:{user.id}"
        allowed = await run_in_threadpool(repository.has_permissions, user.id, [permission])
        if not allowed:
            await write_audit_event(
                request,
                action=action,
                permission=permission,
                status="forbidden",
                message="missing required permission",
                auth_subject=auth_subject,
            )
            raise DomainError("Forbidden", FORBIDDEN, {"required": permission})
        return auth_subject

    async def run_audited(
        request: Request,
        response: Response,
        *,
        action: str,
        permission: str,
        operation: Callable[[], Awaitable[ResultT]],
        describe: Callable[[ResultT], str],
    ) -> ResultT:
        auth_subject = await require_permission(request, action=action, permission=permission)
        try:
            result = await operation()
        except DomainError as exc:
            await write_audit_event(
                request,
                action=action,
                permission=permission,
                status=exc.code.lower(),
                message=exc.message,
                auth_subject=auth_subject,
            )
            raise
        event_id = await write_audit_event(
            request,
            action=action,
            permission=permission,
            status="ok",
            message=describe(result),
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return result

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "access"}

    # users

    @app.post("/users", response_model=Envelope[User], status_code=201)
    async def create_user(
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        user = await run_audited(
            request,
            response,
            action="user_create",
            permission=MANAGE_USERS,
            operation=lambda: user_usecases.create_user(request.app.state.repository, payload or {}),
            describe=lambda created: f"user_id={created.id}",
        )
        return Envelope(value=user)

    @app.get("/users", response_model=Envelope[list[User]])
    async def list_users(request: Request) -> Envelope:
        await require_permission(request, action="user_list", permission=MANAGE_USERS)
        users = await run_in_threadpool(request.app.state.repository.list_users)
        return Envelope(value=users)

    @app.get("/users/{user_id}", response_model=Envelope[UserDetail | None])
    async def get_user(user_id: str, request: Request) -> Envelope:
        await require_permission(request, action="user_get", permission=MANAGE_USERS)
        detail = await user_usecases.get_user_detail(request.app.state.repository, user_id)
        return Envelope(value=detail)

    @app.put("/users/{user_id}", response_model=Envelope[User])
    async def update_user(
        user_id: str,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        user = await run_audited(
            request,
            response,
            action="user_update",
            permission=MANAGE_USERS,
            operation=lambda: user_usecases.update_user(
                request.app.state.repository,
                {**(payload or {}), "id": user_id},
            ),
            describe=lambda updated: f"user_id={updated.id}",
        )
        return Envelope(value=user)

    @app.get("/users/{user_id}/roles", response_model=Envelope[MembershipResponse[Role]])
    async def list_user_roles(user_id: str, request: Request) -> Envelope:
        await require_permission(request, action="user_roles_list", permission=MANAGE_USERS)
        roles = await user_usecases.list_user_roles(request.app.state.user_roles, user_id)
        return Envelope(value=MembershipResponse(owner_id=user_id, members=roles))

    @app.put("/users/{user_id}/roles", response_model=Envelope[MembershipResponse[Role]])
    async def sync_user_roles(
        user_id: str,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        result = await run_audited(
            request,
            response,
            action="user_roles_sync",
            permission=MANAGE_USERS,
            operation=lambda: user_usecases.sync_user_roles(
                request.app.state.user_roles,
                {"id": user_id, "roleIds": (payload or {}).get("roleIds", [])},
            ),
            describe=describe_membership,
        )
        return Envelope(value=membership_response(result))

    @app.post(
        "/users/{user_id}/roles",
        response_model=Envelope[MembershipResponse[Role]],
        status_code=201,
    )
    async def add_user_roles(
        user_id: str,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        result = await run_audited(
            request,
            response,
            action="user_roles_add",
            permission=MANAGE_USERS,
            operation=lambda: user_usecases.add_user_roles(
                request.app.state.user_roles,
                {"id": user_id, "roleIds": (payload or {}).get("roleIds", [])},
            ),
            describe=describe_membership,
        )
        return Envelope(value=membership_response(result))

    @app.delete("/users/{user_id}/roles", response_model=Envelope[MembershipResponse[Role]])
    async def remove_user_roles(
        user_id: str,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        result = await run_audited(
            request,
            response,
            action="user_roles_remove",
            permission=MANAGE_USERS,
            operation=lambda: user_usecases.remove_user_roles(
                request.app.state.user_roles,
                {"id": user_id, "roleIds": (payload or {}).get("roleIds", [])},
            ),
            describe=describe_membership,
        )
        return Envelope(value=membership_response(result))

    @app.get("/users/{user_id}/permissions", response_model=Envelope[list[Permission]])
    async def list_user_permissions(user_id: str, request: Request) -> Envelope:
        await require_permission(request, action="user_permissions_list", permission=MANAGE_USERS)
        permissions = await user_usecases.get_user_permissions(
            request.app.state.repository,
            user_id,
        )
        return Envelope(value=permissions)

    @app.get(
        "/users/{user_id}/roles/{role_slug}/permissions",
        response_model=Envelope[list[Permission]],
    )
    async def list_user_role_permissions(
        user_id: str,
        role_slug: str,
        request: Request,
    ) -> Envelope:
        await require_permission(
            request,
            action="user_role_permissions_list",
            permission=MANAGE_USERS,
        )
        permissions = await user_usecases.get_user_role_permissions(
            request.app.state.repository,
            user_id,
            role_slug,
        )
        return Envelope(value=permissions)

    # roles

    @app.post("/roles", response_model=Envelope[Role], status_code=201)
    async def create_role(
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        role = await run_audited(
            request,
            response,
            action="role_create",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.create_role(
                request.app.state.repository,
                payload or {},
            ),
            describe=lambda created: f"role_id={created.id}; slug={created.slug}",
        )
        return Envelope(value=role)

    @app.get("/roles", response_model=Envelope[list[Role]])
    async def list_roles(request: Request) -> Envelope:
        await require_permission(request, action="role_list", permission=MANAGE_ROLE_PERMISSIONS)
        roles = await run_in_threadpool(request.app.state.repository.list_roles)
        return Envelope(value=roles)

    @app.get("/roles/{role_id}", response_model=Envelope[Role])
    async def get_role(role_id: int, request: Request) -> Envelope:
        await require_permission(request, action="role_get", permission=MANAGE_ROLE_PERMISSIONS)
        role = await role_usecases.get_role(request.app.state.repository, role_id)
        return Envelope(value=role)

    @app.put("/roles/{role_id}", response_model=Envelope[Role])
    async def update_role(
        role_id: int,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        role = await run_audited(
            request,
            response,
            action="role_update",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.update_role(
                request.app.state.repository,
                {**(payload or {}), "id": role_id},
            ),
            describe=lambda updated: f"role_id={updated.id}; slug={updated.slug}",
        )
        return Envelope(value=role)

    @app.patch("/roles/{role_id}/name", response_model=Envelope[Role])
    async def update_role_name(
        role_id: int,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        role = await run_audited(
            request,
            response,
            action="role_rename",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.update_role_name(
                request.app.state.repository,
                {"id": role_id, "name": (payload or {}).get("name")},
            ),
            describe=lambda updated: f"role_id={updated.id}; slug={updated.slug}",
        )
        return Envelope(value=role)

    @app.delete("/roles/{role_id}", response_model=Envelope[DeletedRole])
    async def delete_role(role_id: int, request: Request, response: Response) -> Envelope:
        deleted = await run_audited(
            request,
            response,
            action="role_delete",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.delete_role(request.app.state.repository, role_id),
            describe=lambda removed: f"role_id={removed.id}",
        )
        return Envelope(value=deleted)

    @app.get(
        "/roles/{role_id}/permissions",
        response_model=Envelope[MembershipResponse[Permission]],
    )
    async def list_role_permissions(role_id: int, request: Request) -> Envelope:
        await require_permission(
            request,
            action="role_permissions_list",
            permission=MANAGE_ROLE_PERMISSIONS,
        )
        permissions = await role_usecases.list_role_permissions(
            request.app.state.role_permissions,
            role_id,
        )
        return Envelope(value=MembershipResponse(owner_id=role_id, members=permissions))

    @app.put(
        "/roles/{role_id}/permissions",
        response_model=Envelope[MembershipResponse[Permission]],
    )
    async def sync_role_permissions(
        role_id: int,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        result = await run_audited(
            request,
            response,
            action="role_permissions_sync",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.sync_role_permissions(
                request.app.state.role_permissions,
                {"id": role_id, "permissionIds": (payload or {}).get("permissionIds", [])},
            ),
            describe=describe_membership,
        )
        return Envelope(value=membership_response(result))

    @app.post(
        "/roles/{role_id}/permissions",
        response_model=Envelope[MembershipResponse[Permission]],
        status_code=201,
    )
    async def add_role_permissions(
        role_id: int,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        result = await run_audited(
            request,
            response,
            action="role_permissions_add",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.add_role_permissions(
                request.app.state.role_permissions,
                {"id": role_id, "permissionIds": (payload or {}).get("permissionIds", [])},
            ),
            describe=describe_membership,
        )
        return Envelope(value=membership_response(result))

    @app.delete(
        "/roles/{role_id}/permissions",
        response_model=Envelope[MembershipResponse[Permission]],
    )
    async def remove_role_permissions(
        role_id: int,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        result = await run_audited(
            request,
            response,
            action="role_permissions_remove",
            permission=MANAGE_ROLE_PERMISSIONS,
            operation=lambda: role_usecases.remove_role_permissions(
                request.app.state.role_permissions,
                {"id": role_id, "permissionIds": (payload or {}).get("permissionIds", [])},
            ),
            describe=describe_membership,
        )
        return Envelope(value=membership_response(result))

    @app.get("/roles/{role_id}/users", response_model=Envelope[list[User]])
    async def list_role_users(role_id: int, request: Request) -> Envelope:
        await require_permission(
            request,
            action="role_users_list",
            permission=MANAGE_ROLE_PERMISSIONS,
        )
        users = await role_usecases.list_role_users(request.app.state.repository, role_id)
        return Envelope(value=users)

    # permissions

    @app.get("/permissions", response_model=Envelope[list[Permission]])
    async def list_permissions(request: Request) -> Envelope:
        await require_permission(request, action="permission_list", permission=MANAGE_PERMISSIONS)
        permissions = await run_in_threadpool(request.app.state.repository.list_permissions)
        return Envelope(value=permissions)

    @app.put("/permissions/{permission_id}", response_model=Envelope[Permission])
    async def update_permission(
        permission_id: int,
        request: Request,
        response: Response,
        payload: dict[str, Any] | None = Body(default=None),
    ) -> Envelope:
        permission = await run_audited(
            request,
            response,
            action="permission_update",
            permission=MANAGE_PERMISSIONS,
            operation=lambda: permission_usecases.update_permission(
                request.app.state.repository,
                {**(payload or {}), "id": permission_id},
            ),
            describe=lambda updated: f"permission_id={updated.id}",
        )
        return Envelope(value=permission)

    @app.get("/permissions/{permission_id}/roles", response_model=Envelope[list[Role]])
    async def list_permission_roles(permission_id: int, request: Request) -> Envelope:
        await require_permission(
            request,
            action="permission_roles_list",
            permission=MANAGE_PERMISSIONS,
        )
        roles = await permission_usecases.list_permission_roles(
            request.app.state.repository,
            permission_id,
        )
        return Envelope(value=roles)

    # audit

    @app.get("/audit-events", response_model=Envelope[list[AuditEvent]])
    async def list_audit_events(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        action: str | None = None,
        status: str | None = None,
    ) -> Envelope:
        await require_permission(request, action="audit_events_list", permission=VIEW_AUDIT_EVENTS)
        events = await run_in_threadpool(
            lambda: request.app.state.repository.list_audit_events(
                limit=limit,
                action=action,
                status=status,
            )
        )
        return Envelope(value=events)

    return app


app = create_app()
