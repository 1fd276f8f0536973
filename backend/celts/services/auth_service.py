from datetime import timedelta
from sqlalchemy.orm import Session
from typing import Optional

from ..core.security import create_access_token, verify_token, create_refresh_token
from ..core.config import settings
from .user_service import UserService
from ..schemas.auth import Token
from ..models.user import User


class AuthService:
    def __init__(self, db: Session):
        self.db = db
        self.user_service = UserService(db)

    def _issue_tokens(self, user: User) -> Token:
        claims = {"sub": user.email, "role": user.role}
        access_token = create_access_token(
            data=claims,
            expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        )
        refresh_token = create_refresh_token(data=claims)
        return Token(
            access_token=access_token,
            token_type="bearer",
            refresh_token=refresh_token,
            role=user.role,
        )

    def authenticate_and_create_token(self, email: str, password: str) -> Optional[Token]:
        user = self.user_service.authenticate_user(email, password)
        if not user:
            return None
        return self._issue_tokens(user)

    def refresh_token(self, refresh_token: str) -> Optional[Token]:
        email = verify_token(refresh_token, token_type="refresh")
        if email is None:
            return None

        user = self.user_service.get_user_by_email(email)
        if not user or not user.is_active:
            return None
        return self._issue_tokens(user)

    def get_current_user(self, token: str) -> Optional[User]:
        email = verify_token(token)
        if email is None:
            return None
        user = self.user_service.get_user_by_email(email)
        if user is None or not user.is_active:
            return None
        return user
