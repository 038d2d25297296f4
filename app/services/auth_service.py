import uuid

from starlette.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.errors import AuthenticationError, ValidationError
from app.core.security import (
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from app.models import AuthResponse, User, UserCreate, UserRead
from app.repositories.user_repository import UserRepository

import logging

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(self, repository: UserRepository, settings: Settings):
        self.repository = repository
        self.settings = settings

    def _issue(self, user: User) -> AuthResponse:
        token = create_access_token(str(user.id), self.settings)
        return AuthResponse(user=UserRead.model_validate(user), token=token)

    async def signup(self, user_data: UserCreate) -> AuthResponse:
        email = user_data.email.lower()
        if await self.repository.find_by_email(email) is not None:
            raise ValidationError("Email already registered", error_code="EMAIL_EXISTS")

        # bcrypt is CPU-bound; keep it off the event loop
        password_hash = await run_in_threadpool(hash_password, user_data.password)
        user = await self.repository.insert(
            User(name=user_data.name, email=email, password_hash=password_hash)
        )
        logger.info(f"User {user.id} signed up")
        return self._issue(user)

    async def login(self, email: str, password: str) -> AuthResponse:
        user = await self.repository.find_by_email(email.lower())
        if user is None or not await run_in_threadpool(verify_password, password, user.password_hash):
            raise AuthenticationError("Invalid credentials", error_code="INVALID_CREDENTIALS")
        return self._issue(user)

    async def authenticate(self, token: str) -> UserRead:
        """Resolve a bearer token to its user or raise AuthenticationError."""
        subject = decode_access_token(token, self.settings)
        try:
            user_id = uuid.UUID(str(subject))
        except ValueError:
            raise AuthenticationError("Invalid token", error_code="INVALID_TOKEN") from None

        user = await self.repository.get(user_id)
        if user is None:
            raise AuthenticationError("User not found", error_code="USER_NOT_FOUND")
        return UserRead.model_validate(user)
