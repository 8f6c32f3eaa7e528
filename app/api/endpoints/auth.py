from fastapi import APIRouter, Depends, HTTPException, status

from app.core.dependencies import get_ledger_service
from app.core.security import create_access_token
from app.schemas.auth import RegisterResponse, Token, UserLogin, UserRegister
from app.services.ledger import LedgerService

router = APIRouter()


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user_data: UserRegister,
    ledger: LedgerService = Depends(get_ledger_service),
):
    """Register a new user. New accounts start with the welcome bonus."""
    user = await ledger.register_user(
        username=user_data.username,
        email=user_data.email,
        name=user_data.name,
        password=user_data.password,
        phone=user_data.phone,
    )
    access_token = create_access_token(user.username)
    return {"user": user, "access_token": access_token, "token_type": "bearer"}


@router.post("/login", response_model=Token)
async def login(
    user_data: UserLogin,
    ledger: LedgerService = Depends(get_ledger_service),
):
    """Login endpoint. Accepts JSON with username or email and password, returns JWT token."""
    user = await ledger.authenticate(user_data.login, user_data.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Create access token
    access_token = create_access_token(user.username)
    return {"access_token": access_token, "token_type": "bearer"}
