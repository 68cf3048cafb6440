"""
Authentication: password hashing, bearer tokens and the account operations
built on them.

The cast path only ever receives an authenticated user id; how that id was
established lives behind the AuthProvider seam.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from ..core.stores import Storage, bounded
from ..shared.errors import InvalidCredentials, NotFound
from ..shared.models import User

logger = logging.getLogger(__name__)


class AuthProvider(ABC):
    """Password and token mechanics."""

    @abstractmethod
    def hash_password(self, password: str) -> str:
        ...

    @abstractmethod
    def verify_password(self, password: str, hashed: str) -> bool:
        ...

    @abstractmethod
    def issue_token(self, user: User) -> str:
        ...

    @abstractmethod
    def resolve_token(self, token: str) -> str:
        """Return the user id a token was issued for, or raise InvalidCredentials."""


class JWTAuthProvider(AuthProvider):
    """bcrypt password hashes and HS256-signed JWT bearer tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expire_minutes: int = 60 * 24,
        bcrypt_rounds: int = 12,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes
        self.pwd_context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds
        )

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, hashed: str) -> bool:
        if not hashed:
            return False
        return self.pwd_context.verify(password, hashed)

    def issue_token(self, user: User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.expire_minutes)
        return jwt.encode({"sub": user.id, "exp": expire}, self.secret, algorithm=self.algorithm)

    def resolve_token(self, token: str) -> str:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"Rejected bearer token: {e}")
            raise InvalidCredentials("Not authorized, token failed")

        user_id = payload.get("sub")
        if not user_id:
            raise InvalidCredentials("Not authorized, token failed")
        return user_id


class AccountService:
    """Registration, login and token authentication against the user store."""

    def __init__(self, storage: Storage, provider: AuthProvider, timeout: float = 5.0):
        self.storage = storage
        self.provider = provider
        self.timeout = timeout

    async def register(
        self,
        student_id: str,
        name: str,
        email: str,
        password: str,
        department: str,
        year: int,
        is_admin: bool = False,
    ) -> User:
        """Create a user. Raises UserExists for a taken student id or email."""
        user = User(
            student_id=student_id.upper(),
            name=name,
            email=email.lower(),
            department=department,
            year=year,
            password_hash=self.provider.hash_password(password),
            is_admin=is_admin,
        )
        async with self.storage.session() as session:
            created = await bounded(session.users.register(user), self.timeout)
        logger.info(f"User registered: id={created.id}, student_id={created.student_id}")
        return created

    async def login(self, student_id: str, password: str) -> User:
        async with self.storage.session() as session:
            user: Optional[User] = await bounded(
                session.users.get_by_student_id(student_id.upper()), self.timeout
            )
        if user is None or not self.provider.verify_password(password, user.password_hash):
            logger.info(f"Failed login for student_id={student_id}")
            raise InvalidCredentials()
        return user

    async def authenticate(self, token: str) -> User:
        """Resolve a bearer token to its user."""
        user_id = self.provider.resolve_token(token)
        try:
            async with self.storage.session() as session:
                return await bounded(session.users.get(user_id), self.timeout)
        except NotFound:
            raise InvalidCredentials("Not authorized, user not found")

    def issue_token(self, user: User) -> str:
        return self.provider.issue_token(user)
