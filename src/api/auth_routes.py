"""Sign-in and push token routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_auth, get_backend
from api.schemas import PushTokenRequest, SignInRequest, UserResponse
from config.settings import get_settings
from integrations.auth import AuthManager, User
from integrations.backend_client import BackendClient

router = APIRouter()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        display_name=user.display_name,
        facility_id=user.facility_id,
        role=user.role.value,
    )


@router.post("/auth/sign-in", response_model=UserResponse)
async def sign_in(payload: SignInRequest, auth: AuthManager = Depends(get_auth)) -> UserResponse:
    return _user_response(await auth.sign_in(payload.email, payload.password))


@router.post("/auth/sign-out", status_code=204)
async def sign_out(auth: AuthManager = Depends(get_auth)) -> None:
    await auth.sign_out()


@router.get("/auth/me", response_model=UserResponse)
async def me(auth: AuthManager = Depends(get_auth)) -> UserResponse:
    if auth.user is None or await auth.access_token() is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return _user_response(auth.user)


@router.post("/push/token", status_code=204)
async def register_push_token(
    payload: PushTokenRequest,
    auth: AuthManager = Depends(get_auth),
    backend: BackendClient = Depends(get_backend),
) -> None:
    settings = get_settings()
    await backend.register_push_token(
        user_id=auth.user.id if auth.user else None,
        device_id=settings.device_id,
        token=payload.token,
        platform=payload.platform,
        token_type=payload.token_type,
        app_version=settings.app_version,
    )


@router.delete("/push/token", status_code=204)
async def unregister_push_token(
    token_type: str | None = None,
    backend: BackendClient = Depends(get_backend),
) -> None:
    await backend.unregister_push_token(device_id=get_settings().device_id, token_type=token_type)
