"""
api/routes/v1/users.py -- User administration endpoints (ADMIN role only).

Routes:
  GET    /api/v1/user/list           -- all users
  GET    /api/v1/user/{identifier}   -- one user by id or email
  PUT    /api/v1/user                -- create or update a user by email
  DELETE /api/v1/user/{user_id}      -- delete a user and revoke their refresh tokens

The router-level require_admin dependency builds on get_current_user, so a
missing or invalid token is 401 and a non-admin token is 403.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request

from api.models import DeletedResponse, UserResponse, UserUpsert
from auth.dependencies import require_admin
from core.errors import NotFound

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/user/list", response_model=list[UserResponse])
def list_users(request: Request) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in request.app.state.directory.list_users()]


@router.get("/user/{identifier}", response_model=UserResponse)
def get_user(request: Request, identifier: str) -> UserResponse:
    """Look up a user by id or email (cache first)."""
    user = request.app.state.directory.find_one(identifier)
    if user is None:
        raise NotFound("User not found.")
    return UserResponse.from_user(user)


@router.put("/user", response_model=UserResponse)
def upsert_user(request: Request, body: UserUpsert) -> UserResponse:
    """Create the user if the email is new, otherwise update the given fields."""
    user = request.app.state.directory.upsert_by_email(
        body.email,
        password=body.password,
        provider=body.provider,
        roles=[r.value for r in body.roles] if body.roles else None,
    )
    return UserResponse.from_user(user)


@router.delete("/user/{user_id}", response_model=DeletedResponse)
def delete_user(request: Request, user_id: uuid.UUID) -> DeletedResponse:
    """Delete a user. Their refresh tokens and cache entries go with them."""
    deleted_id = request.app.state.session_service.delete_account(str(user_id))
    return DeletedResponse(id=deleted_id)
