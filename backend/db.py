"""
User record storage on Postgres.

Profiles are kept as JSONB documents; username uniqueness is enforced by a
unique index on lower(username).
"""
import asyncpg # type: ignore
import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from profile_builder import BiometricProfile

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    username        TEXT NOT NULL,
    mantra_profile  JSONB NOT NULL,
    secret_question TEXT NOT NULL DEFAULT '',
    secret_answer   TEXT NOT NULL DEFAULT '',
    answer_profile  JSONB NOT NULL,
    created_at      TIMESTAMP NOT NULL,
    last_login      TIMESTAMP
);
CREATE UNIQUE INDEX IF NOT EXISTS users_username_lower_idx ON users (lower(username));
"""

USERNAME_INDEX = "users_username_lower_idx"

USER_COLUMNS = """
    id, username, mantra_profile, secret_question, secret_answer,
    answer_profile, created_at, last_login
"""


class UsernameTakenError(ValueError):
    """Raised when a username is already registered (case-insensitive)."""


def normalize_username(username: str) -> str:
    return username.strip().lower()


def generate_user_id() -> str:
    return uuid.uuid4().hex


@dataclass
class UserProfile:
    """A registered user with mantra and secret-answer typing profiles."""
    id: str
    username: str
    mantra_profile: BiometricProfile
    secret_question: str
    secret_answer: str
    answer_profile: BiometricProfile
    created_at: datetime
    last_login: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'username': self.username,
            'mantra_profile': self.mantra_profile.to_dict(),
            'secret_question': self.secret_question,
            'secret_answer': self.secret_answer,
            'answer_profile': self.answer_profile.to_dict(),
            'created_at': self.created_at.isoformat(),
            'last_login': self.last_login.isoformat() if self.last_login else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        last_login = data.get('last_login')
        return cls(
            id=data['id'],
            username=data['username'],
            mantra_profile=BiometricProfile.from_dict(data['mantra_profile']),
            secret_question=data.get('secret_question', ''),
            secret_answer=data.get('secret_answer', ''),
            answer_profile=BiometricProfile.from_dict(data['answer_profile']),
            created_at=datetime.fromisoformat(data['created_at']),
            last_login=datetime.fromisoformat(last_login) if last_login else None,
        )


def _load_json(value: Any) -> Dict[str, Any]:
    # asyncpg returns JSONB as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


def user_from_row(row: Mapping[str, Any]) -> UserProfile:
    """Build a UserProfile from a `users` row."""
    return UserProfile(
        id=row["id"],
        username=row["username"],
        mantra_profile=BiometricProfile.from_dict(_load_json(row["mantra_profile"])),
        secret_question=row["secret_question"],
        secret_answer=row["secret_answer"],
        answer_profile=BiometricProfile.from_dict(_load_json(row["answer_profile"])),
        created_at=row["created_at"],
        last_login=row["last_login"],
    )


def _user_args(user: UserProfile) -> tuple:
    return (
        user.id,
        user.username.strip(),
        json.dumps(user.mantra_profile.to_dict()),
        user.secret_question,
        user.secret_answer,
        json.dumps(user.answer_profile.to_dict()),
        user.created_at,
        user.last_login,
    )


class UserStore:
    """Async Postgres connection pool manager for user records."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or os.getenv("DATABASE_URL")
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Initialize connection pool and make sure the schema exists."""
        if self.dsn:
            self.pool = await asyncpg.create_pool(dsn=self.dsn, min_size=1, max_size=10)
        else:
            self.pool = await asyncpg.create_pool(
                host=os.getenv("POSTGRES_HOST", "localhost"),
                port=int(os.getenv("POSTGRES_PORT", "5432")),
                user=os.getenv("POSTGRES_USER", "postgres"),
                password=os.getenv("POSTGRES_PASSWORD", "postgres"),
                database=os.getenv("POSTGRES_DB", "keystroke"),
                min_size=1,
                max_size=10,
            )
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("User store connected")

    async def disconnect(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def list_users(self) -> List[UserProfile]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at, id")
            return [user_from_row(row) for row in rows]

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE id = $1", user_id)
            return user_from_row(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[UserProfile]:
        """Case-insensitive lookup on the trimmed username."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE lower(username) = $1",
                normalize_username(username)
            )
            return user_from_row(row) if row else None

    async def username_exists(self, username: str) -> bool:
        return await self.get_user_by_username(username) is not None

    async def create_user(self, user: UserProfile) -> UserProfile:
        """
        Insert a new user.

        Raises:
            UsernameTakenError: If the username is already registered
            ValueError: If the id or username is missing, or the id exists
        """
        if not user.id or not user.username.strip():
            raise ValueError("Missing required fields")

        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO users ({USER_COLUMNS})
                    VALUES ($1, $2, $3::jsonb, $4, $5, $6::jsonb, $7, $8)
                    """,
                    *_user_args(user)
                )
            except asyncpg.UniqueViolationError as e:
                if e.constraint_name == USERNAME_INDEX:
                    raise UsernameTakenError("Username already taken") from e
                raise ValueError("User id already exists") from e

        logger.info(f"Registered user {user.username} ({user.id})")
        return user

    async def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> bool:
        when = when or datetime.utcnow()
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "UPDATE users SET last_login = $2 WHERE id = $1",
                user_id, when
            )
            return status != "UPDATE 0"

    async def delete_user(self, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute("DELETE FROM users WHERE id = $1", user_id)
        if status == "DELETE 0":
            return False
        logger.info(f"Deleted user {user_id}")
        return True

    async def reset(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("TRUNCATE users")
        logger.info("User store cleared")

    async def export_users(self) -> str:
        users = await self.list_users()
        return json.dumps([u.to_dict() for u in users], indent=2, ensure_ascii=False)

    async def import_users(self, json_data: str) -> int:
        """
        Import users from a JSON backup, replacing records with the same id.

        The import is all-or-nothing.

        Returns:
            Number of imported records

        Raises:
            ValueError: If the data is not a JSON list of user records
            UsernameTakenError: If a username belongs to a different stored
                user or appears twice in the backup
        """
        try:
            records = json.loads(json_data)
            imported = [UserProfile.from_dict(r) for r in records]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError("Invalid JSON data") from e

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for user in imported:
                    owner = await conn.fetchval(
                        "SELECT id FROM users WHERE lower(username) = $1",
                        normalize_username(user.username)
                    )
                    if owner is not None and owner != user.id:
                        raise UsernameTakenError(f"Username {user.username} already taken")

                    await conn.execute(
                        f"""
                        INSERT INTO users ({USER_COLUMNS})
                        VALUES ($1, $2, $3::jsonb, $4, $5, $6::jsonb, $7, $8)
                        ON CONFLICT (id) DO UPDATE SET
                            username = $2,
                            mantra_profile = $3::jsonb,
                            secret_question = $4,
                            secret_answer = $5,
                            answer_profile = $6::jsonb,
                            created_at = $7,
                            last_login = $8
                        """,
                        *_user_args(user)
                    )

        logger.info(f"Imported {len(imported)} users")
        return len(imported)


# Global store instance
db = UserStore()
