"""Users API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from schemas import LoginRequest, LoginResponse, ProfileResponse, RegisterRequest, RegisterResponse
from auth import get_current_user
from dependencies import get_user_service
from services.identity_provider import CallerIdentity
from services.user_service import UserService

router = APIRouter(prefix="/users", tags=["users"])


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db),
    user_service: UserService = Depends(get_user_service)
):
    """Create an account and profile, returning a session token."""
    result = user_service.register(
        db=db,
        email=request.email,
        password=request.password,
        name=request.name,
        user_type=request.user_type
    )

    span = trace.get_current_span()
    span.set_attribute("user.id", result["user_id"])

    return result


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db),
    user_service: UserService = Depends(get_user_service)
):
    """Exchange email and password for a session token."""
    return user_service.login(db, request.email, request.password)


@router.get("/profile", response_model=ProfileResponse)
async def profile(
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service)
):
    """Get the caller's profile - requires authentication."""
    return user_service.profile(db, caller.id)
