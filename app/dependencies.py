"""
Shared request dependencies.

Long-lived resources (settings, cache store, session factory, limiter) are
built once in the app lifespan and read from app.state here, so tests can
construct an app around substitute stores.
"""
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from app.cache.layer import CacheStore
from app.core.config import Settings
from app.core.errors import AuthenticationError
from app.database import get_db
from app.models import UserRead
from app.repositories.task_repository import TaskRepository
from app.repositories.user_repository import UserRepository
from app.services.auth_service import AuthService
from app.services.task_service import TaskService

security = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache_store(request: Request) -> CacheStore:
    return request.app.state.cache_store


async def get_task_service(
    db: AsyncSession = Depends(get_db),
    cache: CacheStore = Depends(get_cache_store),
) -> TaskService:
    return TaskService(TaskRepository(db), cache)


async def get_auth_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> AuthService:
    return AuthService(UserRepository(db), settings)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> UserRead:
    """
    Dependency to get current authenticated user
    Validates the bearer token and loads the user it names
    """
    if not credentials:
        raise AuthenticationError(
            "Not authenticated",
            error_code="NOT_AUTHENTICATED",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await auth_service.authenticate(credentials.credentials)


CurrentUser = Annotated[UserRead, Depends(get_current_user)]
TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
