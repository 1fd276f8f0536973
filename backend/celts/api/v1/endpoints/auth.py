from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from ....core.database import get_db
from ....models.user import User as UserModel, UserRole
from ....services.auth_service import AuthService
from ....services.user_service import UserService
from ....schemas.auth import RefreshRequest, Token
from ....schemas.user import User, UserCreate
from ...deps import get_current_active_user

router = APIRouter()


@router.post("/token", response_model=Token)
async def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    auth_service = AuthService(db)
    token = auth_service.authenticate_and_create_token(
        form_data.username, form_data.password
    )

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token


@router.post("/refresh-token", response_model=Token)
async def refresh_access_token(
    payload: RefreshRequest,
    db: Session = Depends(get_db)
):
    auth_service = AuthService(db)
    new_token_data = auth_service.refresh_token(payload.refresh_token)

    if not new_token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token or user not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return new_token_data


@router.post("/register", response_model=User, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: UserCreate,
    db: Session = Depends(get_db)
):
    # self-registration is for students; staff accounts come from admins
    user_data.role = UserRole.STUDENT
    return UserService(db).create_user(user_data)


@router.get("/me", response_model=User)
async def read_current_user(current_user: UserModel = Depends(get_current_active_user)):
    return current_user
