from sqlalchemy.orm import Session
from typing import Optional

from .. import models, schemas
from ..utils.auth import get_password_hash, normalize_email


class CRUDUser:
    def get_user(self, db: Session, user_id: int) -> Optional[models.User]:
        return db.query(models.User).filter(models.User.id == user_id).first()

    def get_user_by_email(self, db: Session, email: str) -> Optional[models.User]:
        return (
            db.query(models.User)
            .filter(models.User.email == normalize_email(email))
            .first()
        )

    def create_user(self, db: Session, user: schemas.UserCreate) -> models.User:
        db_user = models.User(
            email=normalize_email(user.email),
            password=get_password_hash(user.password),
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role.value,
            status=user.status,
            session_timeout=user.session_timeout,
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        return db_user

    def set_status(self, db: Session, user_id: int, status: models.UserStatus) -> Optional[models.User]:
        db_user = self.get_user(db, user_id)
        if db_user is None:
            return None
        db_user.status = status
        db.commit()
        db.refresh(db_user)
        return db_user


user = CRUDUser()  # Create an instance for easy import
