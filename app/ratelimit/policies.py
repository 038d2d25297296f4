from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import Request

from app.core.config import Settings
from app.core.security import token_subject

KeyFunc = Callable[[Request], Awaitable[str]]


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _user_id(request: Request) -> str | None:
    return token_subject(request.headers.get("authorization"), request.app.state.settings)


async def default_key(request: Request) -> str:
    """user:<id> for authenticated callers, ip:<addr> otherwise."""
    user_id = _user_id(request)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_client_ip(request)}"


async def auth_key(request: Request) -> str:
    """
    Per (client IP, submitted email). Slows credential stuffing against one
    account without locking out other users behind the same address.
    """
    email = "unknown"
    try:
        body = await request.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("email"), str) and body["email"].strip():
        email = body["email"].strip().lower()
    return f"auth:{get_client_ip(request)}:{email}"


async def task_create_key(request: Request) -> str:
    return f"create:user:{_user_id(request) or get_client_ip(request)}"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_ms: int
    max_requests: int
    message: str = "Too many requests, please try again later"
    key_func: KeyFunc = default_key
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False


def build_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    policies = [
        RateLimitPolicy(
            name="api",
            window_ms=settings.api_rate_limit_window_ms,
            max_requests=settings.api_rate_limit_max,
            message="Too many requests from this IP, please try again later",
        ),
        RateLimitPolicy(
            name="auth",
            window_ms=settings.auth_rate_limit_window_ms,
            max_requests=settings.auth_rate_limit_max,
            message="Too many authentication attempts, please try again later",
            key_func=auth_key,
            skip_successful_requests=True,
        ),
        RateLimitPolicy(
            name="task_create",
            window_ms=settings.task_create_rate_limit_window_ms,
            max_requests=settings.task_create_rate_limit_max,
            message="Too many tasks created, please slow down",
            key_func=task_create_key,
        ),
    ]
    return {policy.name: policy for policy in policies}
