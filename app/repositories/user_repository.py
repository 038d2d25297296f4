import uuid

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import ValidationError
from app.models import User
from app.repositories.task_repository import translate_errors


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @translate_errors("Error fetching user")
    async def get(self, user_id: uuid.UUID) -> User | None:
        return await self.session.get(User, user_id)

    @translate_errors("Error fetching user")
    async def find_by_email(self, email: str) -> User | None:
        result = await self.session.exec(select(User).where(User.email == email))
        return result.first()

    @translate_errors("Error creating user")
    async def insert(self, user: User) -> User:
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as e:
            # Lost a signup race on the unique email index
            await self.session.rollback()
            raise ValidationError("Email already registered", error_code="EMAIL_EXISTS") from e
        await self.session.refresh(user)
        return user
