from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List, Optional

from ..models.user import User, UserRole
from ..schemas.user import UserCreate, UserUpdate
from ..core.exceptions import BadRequestError, ConflictError, NotFoundError
from ..core.security import get_password_hash, verify_password


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def create_user(self, user_data: UserCreate) -> User:
        if user_data.role not in UserRole.ALL:
            raise BadRequestError("Invalid role", validRoles=list(UserRole.ALL))
        if self.get_user_by_email(user_data.email):
            raise ConflictError("Email already registered")

        db_user = User(
            full_name=user_data.full_name,
            email=user_data.email,
            system_id=user_data.system_id,
            role=user_data.role,
            hashed_password=get_password_hash(user_data.password),
        )
        self.db.add(db_user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Email already registered")
        self.db.refresh(db_user)
        return db_user

    def update_user(self, user_id: int, user_data: UserUpdate) -> User:
        db_user = self.get_user_by_id(user_id)
        if not db_user:
            raise NotFoundError("User not found")

        update_data = user_data.model_dump(exclude_unset=True)
        if "password" in update_data:
            update_data["hashed_password"] = get_password_hash(update_data.pop("password"))

        for field, value in update_data.items():
            setattr(db_user, field, value)

        self.db.commit()
        self.db.refresh(db_user)
        return db_user

    def list_users(self, role: Optional[str] = None) -> List[User]:
        query = self.db.query(User)
        if role:
            query = query.filter(User.role == role)
        return query.order_by(User.id).all()

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        user = self.get_user_by_email(email)
        if not user or not user.is_active or not verify_password(password, user.hashed_password):
            return None
        return user
