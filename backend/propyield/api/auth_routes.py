"""Account routes: session tokens plus the caller's plan."""
from __future__ import annotations

import asyncio
from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .. import auth, billing
from ..schemas import (
    AccountResponse,
    LoginRequest,
    RefreshRequest,
    SignupRequest,
    SubscriptionSummary,
    TokenResponse,
)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
_bearer = HTTPBearer(auto_error=False)


def _tokens(pair: auth.TokenPair) -> TokenResponse:
    return TokenResponse(**asdict(pair))


@router.post("/signup", response_model=TokenResponse, status_code=201)
def signup(body: SignupRequest) -> TokenResponse:
    return _tokens(auth.signup(body.username, body.email, body.password, full_name=body.full_name))


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest, request: Request) -> TokenResponse:
    ip = request.client.host if request.client else "0.0.0.0"
    return _tokens(auth.login(body.username, body.password, ip=ip))


@router.post("/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest) -> TokenResponse:
    return _tokens(auth.refresh_tokens(body.refresh_token))


@router.post("/logout")
def logout(
    _user: auth.UserRecord = Depends(auth.get_current_user),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> dict:
    if credentials:
        auth.logout(credentials.credentials)
    return {"message": "Logged out."}


@router.get("/me", response_model=AccountResponse)
async def me(user: auth.UserRecord = Depends(auth.get_current_user)) -> AccountResponse:
    sub = await asyncio.to_thread(billing.subscription_for_email, user.email)
    return AccountResponse(
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        subscription_tier=user.subscription_tier,
        subscription=SubscriptionSummary(
            tier=sub["tier"] or billing.FREE_TIER,
            status=sub["status"],
            product_id=sub["product_id"],
            current_period_end=sub["current_period_end"],
        ) if sub else None,
        last_login=user.last_login,
    )
