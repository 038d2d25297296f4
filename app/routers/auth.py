from typing import Awaitable, TypeVar

from fastapi import APIRouter, Depends, status

from app.core.errors import AppError
from app.dependencies import AuthServiceDep
from app.models import AuthResponse, UserCreate, UserLogin
from app.ratelimit.dependencies import RateLimit, RateLimitTicket

router = APIRouter(
    prefix="/api/auth",
    tags=["auth"],
    dependencies=[Depends(RateLimit("api"))],
)

T = TypeVar("T")


async def _reporting(ticket: RateLimitTicket, outcome: Awaitable[T]) -> T:
    """Await the handler's work and tell the limiter how it ended."""
    try:
        result = await outcome
    except AppError:
        await ticket.report_outcome(success=False)
        raise
    await ticket.report_outcome(success=True)
    return result


@router.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    user_data: UserCreate,
    service: AuthServiceDep,
    ticket: RateLimitTicket = Depends(RateLimit("auth")),
):
    """Register a user and return a bearer token"""
    return await _reporting(ticket, service.signup(user_data))


@router.post("/login", response_model=AuthResponse)
async def login(
    credentials: UserLogin,
    service: AuthServiceDep,
    ticket: RateLimitTicket = Depends(RateLimit("auth")),
):
    return await _reporting(ticket, service.login(credentials.email, credentials.password))
