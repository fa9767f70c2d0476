"""
Broker router: credential storage, token exchange and validation, and the
account verification workflow
"""
from datetime import datetime
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
import structlog

from tradelink.core.codec import decode_secure_data
from tradelink.models.user import DataProvider, User
from tradelink.routers.auth import get_credential_store, get_current_user
from tradelink.services.broker_gateway import BrokerGateway, get_broker_gateways
from tradelink.services.broker_service import LABELS, BrokerLinkService, SaveResult
from tradelink.services.credential_store import CredentialStore
from tradelink.services.verification import VerificationContext, VerificationState, VerificationWorkflow

logger = structlog.get_logger()

router = APIRouter(prefix="/broker", tags=["Broker"])

# ================================
# PYDANTIC MODELS
# ================================

class FyersCredentialsUpdate(BaseModel):
    """Fyers credentials; client id and secret arrive base64-encoded"""
    fyers_client_id: Optional[str] = None
    fyers_secret_key: Optional[str] = None
    fyers_auth_code: Optional[str] = None

class ZerodhaCredentialsUpdate(BaseModel):
    """Zerodha credentials; API key and secret arrive base64-encoded"""
    zerodha_api_key: Optional[str] = None
    zerodha_api_secret: Optional[str] = None
    zerodha_request_token: Optional[str] = None

class ClearTokensRequest(BaseModel):
    email: Optional[str] = None
    provider: DataProvider = DataProvider.FYERS

class VerificationCredentials(BaseModel):
    client_id: str = Field(..., description="Base64-encoded client id / API key")
    secret_key: str = Field(..., description="Base64-encoded secret key / API secret")

class RiskManagementUpdate(BaseModel):
    max_daily_loss: Optional[float] = Field(None, ge=0)
    max_position_size: Optional[float] = Field(None, ge=0)
    stop_loss_percentage: Optional[float] = Field(None, ge=0, le=100)

class BrokerSettingsUpdate(BaseModel):
    data_provider: Optional[DataProvider] = None
    trading_enabled: Optional[bool] = None
    paper_trading_mode: Optional[bool] = None
    risk_management: Optional[RiskManagementUpdate] = None

class UserBrokerConfig(BaseModel):
    success: bool = True
    data_provider: Optional[DataProvider]
    is_configured: bool
    is_authenticated: bool
    last_auth_date: Optional[datetime]
    trading_enabled: bool
    paper_trading_mode: bool

class ValidationResponse(BaseModel):
    success: bool
    is_valid: bool
    tokenValid: bool
    message: str
    funds: Any = None

class MessageResponse(BaseModel):
    success: bool
    message: str

# ================================
# DEPENDENCIES
# ================================

def get_broker_service(
    store: CredentialStore = Depends(get_credential_store),
    gateways: Dict[DataProvider, BrokerGateway] = Depends(get_broker_gateways),
) -> BrokerLinkService:
    return BrokerLinkService(store, gateways)

def get_verification_workflow(
    service: BrokerLinkService = Depends(get_broker_service),
) -> VerificationWorkflow:
    return VerificationWorkflow(service)

# ================================
# UTILITY FUNCTIONS
# ================================

def decode_optional(value: Optional[str]) -> Optional[str]:
    return decode_secure_data(value) if value else None

def save_response(service: BrokerLinkService, result: SaveResult) -> dict:
    """Credential save envelope; exchange problems are reported in-band"""
    label = LABELS[result.provider]
    access_token = result.access_token
    body = service.credentials_view(result.user, result.provider)
    body.update({
        "success": True,
        "message": (
            f"{label} credentials updated and access token generated successfully"
            if access_token and not result.token_exchange_error
            else f"{label} credentials updated successfully"
        ),
        "tokenValid": bool(access_token),
        "accessToken": access_token or None,
        "tokenExchangeError": result.token_exchange_error,
        "tokenExchangeErrorType": result.token_exchange_error_type,
    })
    return body

def validation_response(result) -> ValidationResponse:
    return ValidationResponse(
        success=result.success,
        is_valid=result.is_valid,
        tokenValid=result.is_valid,
        message=result.message,
        funds=result.funds,
    )

# ================================
# FYERS ENDPOINTS
# ================================

@router.get("/credentials")
async def get_fyers_credentials(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Stored Fyers credentials (client id and secret base64-encoded)"""
    return service.credentials_view(current_user, DataProvider.FYERS)

@router.put("/credentials")
async def update_fyers_credentials(
    update: FyersCredentialsUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Save Fyers credentials and exchange an auth code when one is supplied"""
    logger.info(
        "Fyers credentials update",
        user_id=str(current_user.id),
        has_client_id=bool(update.fyers_client_id),
        has_secret_key=bool(update.fyers_secret_key),
        has_auth_code=bool(update.fyers_auth_code),
    )
    result = await service.save_credentials(
        current_user.id,
        DataProvider.FYERS,
        client_id=decode_optional(update.fyers_client_id),
        secret_key=decode_optional(update.fyers_secret_key),
        auth_code=update.fyers_auth_code,
    )
    return save_response(service, result)

@router.post("/validate", response_model=ValidationResponse)
async def validate_fyers_token(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Check the stored Fyers token; an invalid token is cleared"""
    return validation_response(await service.validate_token(current_user.id, DataProvider.FYERS))

@router.post("/clear-tokens", response_model=MessageResponse)
async def clear_tokens(
    request: ClearTokensRequest,
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Clear a user's broker tokens and auth code"""
    await service.clear_tokens_by_email(request.email, request.provider)
    return MessageResponse(
        success=True,
        message=f"{LABELS[request.provider]} tokens cleared successfully",
    )

# ================================
# ZERODHA ENDPOINTS
# ================================

@router.get("/zerodha/credentials")
async def get_zerodha_credentials(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    return service.credentials_view(current_user, DataProvider.ZERODHA)

@router.put("/zerodha/credentials")
async def update_zerodha_credentials(
    update: ZerodhaCredentialsUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Save Zerodha credentials and exchange a request token when one is supplied"""
    result = await service.save_credentials(
        current_user.id,
        DataProvider.ZERODHA,
        client_id=decode_optional(update.zerodha_api_key),
        secret_key=decode_optional(update.zerodha_api_secret),
        auth_code=update.zerodha_request_token,
    )
    return save_response(service, result)

@router.post("/zerodha/validate", response_model=ValidationResponse)
async def validate_zerodha_token(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    return validation_response(await service.validate_token(current_user.id, DataProvider.ZERODHA))

# ================================
# ACCOUNT LINK STATUS AND SETTINGS
# ================================

@router.get("/auth-url")
async def get_auth_url(
    current_user: Annotated[User, Depends(get_current_user)],
    provider: DataProvider = Query(DataProvider.FYERS),
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Consent URL for the broker's authorization page"""
    return {"success": True, "provider": provider.value, "auth_url": service.auth_url(current_user, provider)}

@router.get("/status", response_model=UserBrokerConfig)
async def get_broker_status(current_user: Annotated[User, Depends(get_current_user)]):
    """Summary of the user's broker configuration"""
    provider = current_user.provider
    is_configured = False
    if provider == DataProvider.FYERS:
        is_configured = current_user.has_fyers_credentials()
    elif provider == DataProvider.ZERODHA:
        is_configured = current_user.has_zerodha_credentials()

    return UserBrokerConfig(
        data_provider=provider,
        is_configured=is_configured,
        is_authenticated=bool(provider and current_user.is_broker_authorized(provider)),
        last_auth_date=current_user.last_auth_date(provider),
        trading_enabled=bool(current_user.trading_enabled),
        paper_trading_mode=bool(current_user.paper_trading_mode),
    )

@router.put("/settings", response_model=UserBrokerConfig)
async def update_broker_settings(
    update: BrokerSettingsUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    store: CredentialStore = Depends(get_credential_store),
):
    """Select the data provider and update trading flags and risk limits"""
    fields: Dict[str, Any] = {}
    if update.data_provider is not None:
        fields["data_provider"] = update.data_provider
    if update.trading_enabled is not None:
        fields["trading_enabled"] = update.trading_enabled
    if update.paper_trading_mode is not None:
        fields["paper_trading_mode"] = update.paper_trading_mode
    if update.risk_management is not None:
        fields.update(update.risk_management.model_dump(exclude_none=True))

    user = await store.update_broker_fields(current_user.id, fields)
    logger.info("Broker settings updated", user_id=str(user.id), fields=sorted(fields))
    return await get_broker_status(user)

# ================================
# VERIFICATION WORKFLOW
# ================================

@router.get("/verification")
async def get_verification_state(
    current_user: Annotated[User, Depends(get_current_user)],
    provider: DataProvider = Query(DataProvider.FYERS),
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
):
    """Current verification state for the selected broker"""
    ctx = VerificationContext(user_id=current_user.id, provider=provider)
    await workflow.check(ctx)
    return ctx.as_dict()

@router.post("/verification/credentials")
async def submit_verification_credentials(
    credentials: VerificationCredentials,
    current_user: Annotated[User, Depends(get_current_user)],
    provider: DataProvider = Query(DataProvider.FYERS),
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
):
    """Save credentials from the verification page and re-check"""
    ctx = VerificationContext(user_id=current_user.id, provider=provider)
    await workflow.submit_credentials(ctx, credentials.client_id, credentials.secret_key)
    return ctx.as_dict()

@router.post("/verification/start")
async def start_verification(
    current_user: Annotated[User, Depends(get_current_user)],
    provider: DataProvider = Query(DataProvider.FYERS),
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
):
    """Begin (or retry) broker authorization and return the consent URL"""
    ctx = VerificationContext(user_id=current_user.id, provider=provider)
    await workflow.check(ctx)
    if ctx.state == VerificationState.FAILED:
        workflow.retry(ctx)
    if ctx.state == VerificationState.REQUIRES_AUTH:
        await workflow.start_auth(ctx)
    return ctx.as_dict()

@router.get("/verification/callback")
async def verification_callback(
    current_user: Annotated[User, Depends(get_current_user)],
    provider: DataProvider = Query(DataProvider.FYERS),
    auth_code: Optional[str] = Query(None),
    request_token: Optional[str] = Query(None),
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
):
    """Return path from the broker consent page"""
    ctx = VerificationContext(user_id=current_user.id, provider=provider)
    await workflow.handle_callback(ctx, auth_code or request_token or "")
    return ctx.as_dict()
