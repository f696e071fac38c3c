import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy import DateTime

from task_api.cache import keys
from task_api.cache.service import TTLTier
from task_api.core.errors import ConflictError, QueryValidationError
from task_api.database import Transaction
from task_api.models import UserCreate, UserRead
from task_api.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

TIMESTAMP = DateTime(timezone=True)


class UserRepository(BaseRepository):
    """User lookups for the authentication middleware; profiles are cached."""

    table_name = "users"

    async def get_by_id(self, user_id: int) -> UserRead | None:
        async def load() -> UserRead | None:
            result = await self.db.execute(
                "SELECT id, email, name, created_at FROM users WHERE id = :user_id",
                {"user_id": user_id},
            )
            row = result.first()
            return UserRead.model_validate(row) if row else None

        return await self._read_through(
            keys.user_profile_key(user_id), UserRead, load, TTLTier.MEDIUM
        )

    async def get_by_email(self, email: str) -> UserRead | None:
        # not cached: used for logins, which must see the current row
        result = await self.db.execute(
            "SELECT id, email, name, created_at FROM users WHERE email = :email",
            {"email": email.lower()},
        )
        row = result.first()
        return UserRead.model_validate(row) if row else None

    async def create(self, data: UserCreate | Mapping[str, Any]) -> UserRead:
        if not isinstance(data, UserCreate):
            try:
                data = UserCreate.model_validate(dict(data))
            except ValidationError as e:
                raise QueryValidationError(f"Invalid user: {e.error_count()} error(s)") from e

        async def insert(tx: Transaction) -> UserRead:
            existing = await tx.execute(
                "SELECT id FROM users WHERE email = :email", {"email": data.email.lower()}
            )
            if existing.rows:
                raise ConflictError("A user with this email already exists")
            result = await tx.execute(
                """
                INSERT INTO users (email, name, password_hash, created_at)
                VALUES (:email, :name, :password_hash, :created_at)
                RETURNING id, email, name, created_at
                """,
                {
                    "email": data.email.lower(),
                    "name": data.name,
                    "password_hash": data.password_hash,
                    "created_at": self.utc_now(),
                },
                types={"created_at": TIMESTAMP},
            )
            return UserRead.model_validate(result.rows[0])

        user = await self.db.with_transaction(insert)
        logger.info(f"User created: id={user.id}")
        return user
