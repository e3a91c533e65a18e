"""FastAPI application exposing the user service."""
from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Dict, List, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .config import load_settings, open_key_ring
from .database import Database
from .keys import dump_key_ring
from .errors import (
    DuplicateUser,
    EncryptionError,
    InvalidOrInactiveUser,
    InvalidParameter,
    MissingRequiredField,
    UserNotFound,
    UserServiceError,
    VersionConflict,
)
from .models import REVENUE_RANGES, User, UserTier
from .roles import UserRole
from .security import TokenAuth
from .users import UserService

logger = logging.getLogger("bizmetrics.api")

_STATUS_BY_ERROR: Dict[Type[Exception], int] = {
    MissingRequiredField: 422,
    InvalidParameter: 422,
    DuplicateUser: status.HTTP_409_CONFLICT,
    VersionConflict: status.HTTP_409_CONFLICT,
    UserNotFound: status.HTTP_404_NOT_FOUND,
    InvalidOrInactiveUser: status.HTTP_403_FORBIDDEN,
}


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: UserRole
    tier: UserTier
    revenue_range: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime]
    version: int


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int
    page: int
    limit: int


class CreateUserRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    external_id: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[UserRole] = None
    tier: Optional[UserTier] = None
    revenue_range: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("revenue_range")
    @classmethod
    def _check_revenue_range(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in REVENUE_RANGES:
            raise ValueError(f"revenue_range must be one of {', '.join(REVENUE_RANGES)}")
        return value


class UpdateUserRequest(BaseModel):
    version: int = Field(..., ge=1)
    email: Optional[str] = Field(default=None, max_length=320)
    external_id: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[UserRole] = None
    tier: Optional[UserTier] = None
    revenue_range: Optional[str] = None
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, object]:
        return self.model_dump(exclude_unset=True, exclude={"version"})


class VersionRequest(BaseModel):
    version: int = Field(..., ge=1)


class RoleCheckResponse(BaseModel):
    user_id: str
    required_role: UserRole
    allowed: bool


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        tier=user.tier,
        revenue_range=user.revenue_range,
        is_active=user.is_active,
        created_at=user.created_at,
        updated_at=user.updated_at,
        last_login_at=user.last_login_at,
        version=user.version,
    )


def _error_response(exc: Exception) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    body: Dict[str, object] = {"detail": str(exc), "error": getattr(exc, "kind", "error")}
    if isinstance(exc, VersionConflict):
        body["current_version"] = exc.actual
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    *,
    service: UserService | None = None,
    auth: TokenAuth | None = None,
) -> FastAPI:
    if service is None or auth is None:
        settings = load_settings()
        if service is None:
            database = Database(settings.database_path)
            database.initialize()
            service = UserService(
                database,
                open_key_ring(settings.keyring_path),
                key_ring_store=partial(dump_key_ring, path=settings.keyring_path),
            )
        if auth is None:
            auth = TokenAuth(settings.api_tokens)

    app = FastAPI(
        title="bizmetrics identity",
        description="User management with field-level encryption and optimistic versioning",
        version="1.0.0",
    )
    app.state.user_service = service

    @app.exception_handler(UserServiceError)
    async def _handle_service_error(_request: Request, exc: UserServiceError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(EncryptionError)
    async def _handle_encryption_error(_request: Request, exc: EncryptionError) -> JSONResponse:
        if not isinstance(exc, InvalidParameter):
            logger.error("Encryption failure while serving request: %s", exc.kind)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Stored user data could not be processed", "error": exc.kind},
            )
        return _error_response(exc)

    def get_service() -> UserService:
        return service

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    router = APIRouter(prefix="/v1/users", dependencies=[Depends(auth)])

    @router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    def create_user(payload: CreateUserRequest, users: UserService = Depends(get_service)) -> UserResponse:
        data = payload.model_dump(exclude_none=True)
        return user_to_response(users.create_user(data))

    @router.get("", response_model=UserListResponse)
    def list_users(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        role: Optional[UserRole] = None,
        active: Optional[bool] = True,
        users: UserService = Depends(get_service),
    ) -> UserListResponse:
        found, total = users.list_users(page=page, limit=limit, role=role, is_active=active)
        return UserListResponse(
            users=[user_to_response(user) for user in found],
            total=total,
            page=page,
            limit=limit,
        )

    @router.get("/{user_id}", response_model=UserResponse)
    def get_user(user_id: str, users: UserService = Depends(get_service)) -> UserResponse:
        user = users.get_user_by_id(user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return user_to_response(user)

    @router.patch("/{user_id}", response_model=UserResponse)
    def update_user(
        user_id: str,
        payload: UpdateUserRequest,
        users: UserService = Depends(get_service),
    ) -> UserResponse:
        return user_to_response(users.update_user(user_id, payload.changes(), payload.version))

    @router.post("/{user_id}/deactivate", response_model=UserResponse)
    def deactivate_user(
        user_id: str,
        payload: VersionRequest,
        users: UserService = Depends(get_service),
    ) -> UserResponse:
        return user_to_response(users.deactivate_user(user_id, payload.version))

    @router.post("/{user_id}/rotate-encryption", response_model=UserResponse)
    def rotate_encryption(user_id: str, users: UserService = Depends(get_service)) -> UserResponse:
        return user_to_response(users.rotate_user_encryption(user_id))

    @router.get("/{user_id}/roles/{role}", response_model=RoleCheckResponse)
    def check_role(user_id: str, role: str, users: UserService = Depends(get_service)) -> RoleCheckResponse:
        required = UserRole.parse(role)
        allowed = users.validate_user_role(user_id, required)
        return RoleCheckResponse(user_id=user_id, required_role=required, allowed=allowed)

    app.include_router(router)
    return app


__all__ = ["create_app", "user_to_response"]
