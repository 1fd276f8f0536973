from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.exceptions import AuthorizationError
from ..core.security import oauth2_scheme
from ..services.auth_service import AuthService
from ..models.user import User, UserRole


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    auth_service = AuthService(db)
    user = auth_service.get_current_user(token)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    return current_user


def require_roles(*roles: str):
    """Dependency factory restricting a route to the given roles."""

    def checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            raise AuthorizationError(
                f"Access denied. Requires one of the following roles: {', '.join(roles)}"
            )
        return current_user

    return checker


get_current_student = require_roles(UserRole.STUDENT)
get_current_faculty = require_roles(UserRole.FACULTY)
get_current_staff = require_roles(UserRole.FACULTY, UserRole.ADMIN)
get_current_admin = require_roles(UserRole.ADMIN)
