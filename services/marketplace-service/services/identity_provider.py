"""Identity provider: credential accounts and signed bearer tokens."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientError
from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import Conflict, InvalidCredential, ValidationError
from models import IdentityAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Identity resolved from a verified bearer token."""
    id: str
    email: Optional[str]
    user_type: Optional[str] = None


def hash_password(plain: str) -> str:
    """Hash a plain-text password with bcrypt."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plain-text password against a bcrypt hash."""
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


class IdentityProvider:
    """
    Issues and verifies bearer tokens for marketplace users.

    Accounts created here are signed with the shared ``secret`` (HS256 by
    default). When a JWKS URL is configured, RS256 tokens minted by an
    external provider are accepted as well.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        token_ttl_minutes: int = 60,
        jwks_url: Optional[str] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.token_ttl = timedelta(minutes=token_ttl_minutes)
        self.jwks_client = PyJWKClient(jwks_url) if jwks_url else None
        self.audience = audience
        self.issuer = issuer
        self.tracer = trace.get_tracer(__name__)

    def create_account(self, db: Session, email: str, password: str) -> IdentityAccount:
        """
        Create a credential account.

        Raises:
            ValidationError: If email or password is empty
            Conflict: If the email is already registered
        """
        email = (email or "").strip().lower()
        if not email or not password:
            raise ValidationError("Email and password are required")

        with self.tracer.start_as_current_span("db.query.insert_identity_account") as db_span:
            db_span.set_attribute("db.operation", "INSERT")
            db_span.set_attribute("db.table", "identity_accounts")

            if db.query(IdentityAccount).filter(IdentityAccount.email == email).first():
                raise Conflict("Email is already registered")

            account = IdentityAccount(email=email, password_hash=hash_password(password))
            db.add(account)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise Conflict("Email is already registered")
            db.refresh(account)

        logger.info("Identity account created", extra={"user_id": account.uid})
        return account

    def delete_account(self, db: Session, uid: str) -> None:
        db.query(IdentityAccount).filter(IdentityAccount.uid == uid).delete()
        db.commit()
        logger.warning("Identity account removed", extra={"user_id": uid})

    def authenticate(self, db: Session, email: str, password: str) -> IdentityAccount:
        """
        Check an email/password pair.

        Raises:
            InvalidCredential: Unknown email or wrong password
        """
        email = (email or "").strip().lower()
        account = db.query(IdentityAccount).filter(IdentityAccount.email == email).first()
        if account is None or not verify_password(password or "", account.password_hash):
            raise InvalidCredential("Invalid credentials")
        return account

    def issue_token(self, uid: str, email: str, user_type: Optional[str] = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": uid,
            "email": email,
            "iat": now,
            "exp": now + self.token_ttl,
        }
        if user_type:
            payload["userType"] = user_type
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_token(self, token: str) -> CallerIdentity:
        """
        Verify a bearer token and return the caller identity.

        Raises:
            InvalidCredential: Expired, forged or unverifiable token
        """
        try:
            header = jwt.get_unverified_header(token)
            if self.jwks_client is not None and header.get("alg") == "RS256":
                signing_key = self.jwks_client.get_signing_key_from_jwt(token).key
                payload = jwt.decode(
                    token,
                    signing_key,
                    algorithms=["RS256"],
                    audience=self.audience,
                    issuer=self.issuer,
                    options={"require": ["exp", "iat", "sub"], "verify_aud": self.audience is not None}
                )
            else:
                payload = jwt.decode(
                    token,
                    self.secret,
                    algorithms=[self.algorithm],
                    options={"require": ["exp", "sub"]}
                )
        except jwt.ExpiredSignatureError:
            raise InvalidCredential("Token expired. Please log in again.")
        except (jwt.InvalidTokenError, PyJWKClientError):
            raise InvalidCredential("Token is invalid or malformed")

        return CallerIdentity(
            id=str(payload["sub"]),
            email=payload.get("email"),
            user_type=payload.get("userType")
        )
