"""User registration, login and profiles."""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import DEFAULT_USER_TYPE, USER_TYPES
from errors import DatabaseError, InvalidCredential, NotFound, ValidationError
from models import User
from monitoring import auth_attempts_counter, auth_failures_counter
from services.identity_provider import IdentityProvider

logger = logging.getLogger(__name__)


class UserService:
    """Registers users with the identity provider and keeps their profiles."""

    def __init__(self, identity_provider: IdentityProvider):
        self.identity_provider = identity_provider

    def register(
        self,
        db: Session,
        email: str,
        password: str,
        name: Optional[str] = None,
        user_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create an identity account plus a profile and return a session token.

        If the profile cannot be written the identity account is removed
        again so the email can be reused.
        """
        user_type = (user_type or DEFAULT_USER_TYPE).strip().lower()
        if user_type not in USER_TYPES:
            raise ValidationError(f"userType must be one of: {', '.join(sorted(USER_TYPES))}")

        account = self.identity_provider.create_account(db, email, password)

        try:
            profile = User(
                identity_id=account.uid,
                email=account.email,
                name=name,
                user_type=user_type
            )
            db.add(profile)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to save user profile", extra={
                "user_id": account.uid,
                "error": str(e)
            })
            self.identity_provider.delete_account(db, account.uid)
            raise DatabaseError("Could not register user")

        logger.info("User registered", extra={"user_id": account.uid, "user_type": user_type})

        return {
            "message": "User registered",
            "user_id": account.uid,
            "email": account.email,
            "token": self.identity_provider.issue_token(account.uid, account.email, user_type),
        }

    def login(self, db: Session, email: str, password: str) -> Dict[str, Any]:
        auth_attempts_counter.add(1, {"type": "login"})
        try:
            account = self.identity_provider.authenticate(db, email, password)
        except InvalidCredential:
            auth_failures_counter.add(1, {"reason": "invalid_credentials"})
            logger.warning("Login failed: invalid credentials")
            raise

        profile = self.find_profile(db, account.uid)
        user_type = profile.user_type if profile and profile.user_type else DEFAULT_USER_TYPE

        logger.info("User logged in", extra={"user_id": account.uid})

        return {
            "message": "Login successful",
            "token": self.identity_provider.issue_token(account.uid, account.email, user_type),
            "user_id": account.uid,
            "email": account.email,
            "user_type": user_type,
        }

    def find_profile(self, db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.identity_id == str(user_id)).first()

    def profile(self, db: Session, user_id: str) -> Dict[str, Any]:
        user = self.find_profile(db, user_id)
        if user is None:
            raise NotFound("User profile not found")
        return {
            "user_id": user.identity_id,
            "email": user.email,
            "name": user.name,
            "user_type": user.user_type or DEFAULT_USER_TYPE,
            "created_at": user.created_at,
        }
