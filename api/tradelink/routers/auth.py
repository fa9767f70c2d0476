"""
Authentication router for registration, login, token verification and
account verification
"""
from datetime import datetime
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from tradelink.core.database import get_db
from tradelink.core.exceptions import AuthError, ForbiddenError
from tradelink.core.security import verify_api_key
from tradelink.models.user import User
from tradelink.services.auth_service import AuthService, verify_token
from tradelink.services.credential_store import CredentialStore

logger = structlog.get_logger()

# Security setup
security = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/auth", tags=["Authentication"])

# ================================
# PYDANTIC MODELS
# ================================

class LoginCredentials(BaseModel):
    """Login request; missing fields are reported as a 400 by the service"""
    email: Optional[str] = None
    password: Optional[str] = None

class RegisterCredentials(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None

class VerifyAccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")

class RiskManagement(BaseModel):
    maxDailyLoss: float = 0
    maxPositionSize: float = 0
    stopLossPercentage: float = 0

class UserResponse(BaseModel):
    """User view returned to clients (never includes the password hash)"""
    id: str
    email: str
    name: str
    is_verified: bool
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    dataProvider: Optional[str] = None

    fyersClientId: str = ""
    fyersSecretKey: str = ""
    fyersAuthCode: str = ""
    fyersAccessToken: str = ""
    fyersRefreshToken: str = ""
    fyersRedirectUri: str = ""
    fyersUserId: str = ""

    zerodhaApiKey: str = ""
    zerodhaApiSecret: str = ""
    zerodhaRequestToken: str = ""
    zerodhaAccessToken: str = ""
    zerodhaPublicToken: str = ""
    zerodhaUserId: str = ""

    tradingEnabled: bool = False
    paperTradingMode: bool = False
    riskManagement: RiskManagement = Field(default_factory=RiskManagement)

class AuthResponse(BaseModel):
    success: bool
    message: str
    user: Optional[UserResponse] = None
    token: Optional[str] = None

class UserListResponse(BaseModel):
    success: bool
    users: List[UserResponse]

# ================================
# UTILITY FUNCTIONS
# ================================

def user_to_auth_user(user: User) -> UserResponse:
    """Sanitized user view; unset credential fields are rendered as empty strings"""
    return UserResponse(
        id=str(user.id),
        email=user.email,
        name=user.name or "",
        is_verified=bool(user.is_verified),
        createdAt=user.created_at,
        updatedAt=user.updated_at,
        dataProvider=user.data_provider or None,
        fyersClientId=user.fyers_client_id or "",
        fyersSecretKey=user.fyers_secret_key or "",
        fyersAuthCode=user.fyers_auth_code or "",
        fyersAccessToken=user.fyers_access_token or "",
        fyersRefreshToken=user.fyers_refresh_token or "",
        fyersRedirectUri=user.fyers_redirect_uri or "",
        fyersUserId=user.fyers_user_id or "",
        zerodhaApiKey=user.zerodha_api_key or "",
        zerodhaApiSecret=user.zerodha_api_secret or "",
        zerodhaRequestToken=user.zerodha_request_token or "",
        zerodhaAccessToken=user.zerodha_access_token or "",
        zerodhaPublicToken=user.zerodha_public_token or "",
        zerodhaUserId=user.zerodha_user_id or "",
        tradingEnabled=bool(user.trading_enabled),
        paperTradingMode=bool(user.paper_trading_mode),
        riskManagement=RiskManagement(
            maxDailyLoss=user.max_daily_loss or 0,
            maxPositionSize=user.max_position_size or 0,
            stopLossPercentage=user.stop_loss_percentage or 0,
        ),
    )

def get_credential_store(db: AsyncSession = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)

async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    store: CredentialStore = Depends(get_credential_store),
) -> User:
    """Resolve the bearer token to a stored, verified user"""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("No token provided")

    claims = verify_token(credentials.credentials)
    if claims is None:
        raise AuthError("Invalid or expired token")

    user = await store.get(claims.user_id)

    if not user.is_verified:
        raise ForbiddenError()

    return user

async def require_admin(x_admin_key: Annotated[Optional[str], Header()] = None) -> None:
    if not verify_api_key(x_admin_key):
        logger.warning("Rejected admin request")
        raise AuthError("Admin key required")

# ================================
# AUTHENTICATION ENDPOINTS
# ================================

@router.post("/register", response_model=AuthResponse)
async def register_user(
    credentials: RegisterCredentials,
    store: CredentialStore = Depends(get_credential_store),
):
    """Register a new, unverified user"""
    result = await AuthService(store).register(credentials.email, credentials.password, credentials.name)

    return AuthResponse(
        success=True,
        message="User registered successfully",
        user=user_to_auth_user(result.user),
        token=result.token,
    )

@router.post("/login", response_model=AuthResponse)
async def login_user(
    credentials: LoginCredentials,
    store: CredentialStore = Depends(get_credential_store),
):
    """Authenticate user and return an identity token"""
    result = await AuthService(store).login(credentials.email, credentials.password)

    return AuthResponse(
        success=True,
        message="Login successful",
        user=user_to_auth_user(result.user),
        token=result.token,
    )

@router.get("/verify", response_model=AuthResponse)
async def verify_user_token(current_user: Annotated[User, Depends(get_current_user)]):
    """Check the bearer token and return the current user record"""
    return AuthResponse(
        success=True,
        message="Token is valid",
        user=user_to_auth_user(current_user),
    )

# ================================
# ADMIN ENDPOINTS
# ================================

@router.post("/verify-account", response_model=AuthResponse, dependencies=[Depends(require_admin)])
async def verify_account(
    request: VerifyAccountRequest,
    store: CredentialStore = Depends(get_credential_store),
):
    """Mark a user account as verified"""
    user = await AuthService(store).verify_account(request.user_id)

    logger.info("Account verified", user_id=str(user.id))

    return AuthResponse(
        success=True,
        message="Account verified successfully",
        user=user_to_auth_user(user),
    )

@router.get("/admin/users", response_model=UserListResponse, dependencies=[Depends(require_admin)])
async def list_users(
    verified: Optional[bool] = Query(None, description="Filter by verification status"),
    store: CredentialStore = Depends(get_credential_store),
):
    """List users, typically those still awaiting verification"""
    users = await store.list_users(verified=verified)
    return UserListResponse(success=True, users=[user_to_auth_user(u) for u in users])
