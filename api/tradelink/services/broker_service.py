"""
Broker link operations: saving credentials, exchanging authorization codes,
validating and clearing tokens, and reading account data
"""
from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional, Tuple
import uuid

import structlog

from tradelink.core.codec import encode_secure_data
from tradelink.core.exceptions import (
    BrokerTokenInvalid,
    ExchangeRejected,
    InternalError,
    NetworkFailure,
    NotFoundError,
    TradeLinkError,
    ValidationError,
)
from tradelink.core.metrics import record_token_exchange, record_token_validation
from tradelink.models.user import DataProvider, User, utcnow
from tradelink.services.broker_gateway import BrokerGateway, PortfolioSnapshot
from tradelink.services.credential_store import CredentialStore

logger = structlog.get_logger()


class CredentialColumns(NamedTuple):
    """Column names of one provider's credential group"""
    client_id: str
    secret_key: str
    auth_code: str
    access_token: str
    refresh_token: Optional[str]
    public_token: Optional[str]
    broker_user_id: str
    redirect_uri: Optional[str]
    auth_date: str


COLUMNS = {
    DataProvider.FYERS: CredentialColumns(
        client_id="fyers_client_id",
        secret_key="fyers_secret_key",
        auth_code="fyers_auth_code",
        access_token="fyers_access_token",
        refresh_token="fyers_refresh_token",
        public_token=None,
        broker_user_id="fyers_user_id",
        redirect_uri="fyers_redirect_uri",
        auth_date="fyers_auth_date",
    ),
    DataProvider.ZERODHA: CredentialColumns(
        client_id="zerodha_api_key",
        secret_key="zerodha_api_secret",
        auth_code="zerodha_request_token",
        access_token="zerodha_access_token",
        refresh_token=None,
        public_token="zerodha_public_token",
        broker_user_id="zerodha_user_id",
        redirect_uri=None,
        auth_date="zerodha_auth_date",
    ),
}

LABELS = {
    DataProvider.FYERS: "Fyers",
    DataProvider.ZERODHA: "Zerodha",
}

# Values of SaveResult.token_exchange_error_type
EXCHANGE_REJECTED = "rejected"
EXCHANGE_NETWORK = "network"
EXCHANGE_INTERNAL = "internal"
EXCHANGE_MISSING_CREDENTIALS = "missing_credentials"


@dataclass
class SaveResult:
    user: User
    provider: DataProvider
    token_exchange_error: Optional[str] = None
    token_exchange_error_type: Optional[str] = None

    @property
    def access_token(self) -> str:
        return getattr(self.user, COLUMNS[self.provider].access_token) or ""


@dataclass
class TokenCheck:
    success: bool
    is_valid: bool
    message: str
    funds: Any = None
    # The broker could not give an answer; stored tokens are left untouched
    check_failed: bool = False
    network_error: bool = False


def classify_exchange_failure(exc: TradeLinkError) -> Tuple[str, str]:
    """Message and SaveResult error type for a failed exchange"""
    if isinstance(exc, ExchangeRejected):
        return exc.message, EXCHANGE_REJECTED
    if exc.retryable:
        return "Network error during token exchange", EXCHANGE_NETWORK
    return exc.message, EXCHANGE_INTERNAL


def credential(user: User, provider: DataProvider, column: str) -> str:
    name = getattr(COLUMNS[provider], column)
    if name is None:
        return ""
    return getattr(user, name) or ""


class BrokerLinkService:
    """Orchestrates the credential store and the broker gateways for one request"""

    def __init__(self, store: CredentialStore, gateways: Dict[DataProvider, BrokerGateway]):
        self.store = store
        self.gateways = gateways

    def gateway(self, provider: DataProvider) -> BrokerGateway:
        try:
            return self.gateways[provider]
        except KeyError:
            raise InternalError(f"No gateway configured for {provider.value}")

    # ================================
    # CREDENTIALS
    # ================================

    def credentials_view(self, user: User, provider: DataProvider) -> dict:
        """Stored credentials, with the client id and secret base64-encoded"""
        client_id = encode_secure_data(credential(user, provider, "client_id"))
        secret_key = encode_secure_data(credential(user, provider, "secret_key"))
        access_token = credential(user, provider, "access_token")

        if provider == DataProvider.FYERS:
            return {
                "success": True,
                "fyers_client_id": client_id,
                "fyers_secret_key": secret_key,
                "fyers_access_token": access_token or None,
                "fyers_refresh_token": credential(user, provider, "refresh_token") or None,
                "token_valid": bool(access_token),
            }
        return {
            "success": True,
            "zerodha_api_key": client_id,
            "zerodha_api_secret": secret_key,
            "zerodha_access_token": access_token or None,
            "zerodha_public_token": credential(user, provider, "public_token") or None,
            "token_valid": bool(access_token),
        }

    async def save_credentials(
        self,
        user_id: uuid.UUID | str,
        provider: DataProvider,
        client_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        auth_code: Optional[str] = None,
    ) -> SaveResult:
        """Persist credentials and, when an auth code is given, exchange it inline.

        Previously stored access/refresh tokens are cleared before any new
        exchange, so a failed exchange never leaves an old token behind. A
        resubmitted code is refused without contacting the broker and leaves
        the stored tokens as they are.
        """
        user = await self.store.get(user_id)
        columns = COLUMNS[provider]
        label = LABELS[provider]

        token_fields: Dict[str, Any] = {columns.access_token: ""}
        if columns.refresh_token:
            token_fields[columns.refresh_token] = ""
        if columns.public_token:
            token_fields[columns.public_token] = ""

        fields: Dict[str, Any] = {}
        if client_id:
            fields[columns.client_id] = client_id
        if secret_key:
            fields[columns.secret_key] = secret_key
        if not user.data_provider:
            fields["data_provider"] = provider.value

        previous_code = getattr(user, columns.auth_code) or ""
        if auth_code is not None:
            fields[columns.auth_code] = auth_code or ""

        error: Optional[str] = None
        error_type: Optional[str] = None

        if auth_code and auth_code == previous_code:
            error = "This authorization code has already been used. Please authenticate again."
            error_type = EXCHANGE_REJECTED
            record_token_exchange(provider.value, "reused_code")
            logger.warning("Refusing to resubmit used auth code", user_id=str(user.id), broker=provider.value)
        else:
            fields.update(token_fields)

        if auth_code and error is None:
            effective_client_id = fields.get(columns.client_id) or getattr(user, columns.client_id)
            effective_secret = fields.get(columns.secret_key) or getattr(user, columns.secret_key)

            if not (effective_client_id and effective_secret):
                error = f"Missing {label} client ID or secret key for token exchange"
                error_type = EXCHANGE_MISSING_CREDENTIALS
            else:
                try:
                    tokens = await self.gateway(provider).exchange_auth_code(
                        effective_client_id, effective_secret, auth_code
                    )
                except (ExchangeRejected, NetworkFailure, InternalError) as e:
                    error, error_type = classify_exchange_failure(e)
                else:
                    fields[columns.access_token] = tokens.access_token
                    if columns.refresh_token:
                        fields[columns.refresh_token] = tokens.refresh_token
                    if columns.public_token:
                        fields[columns.public_token] = tokens.public_token
                    if tokens.broker_user_id:
                        fields[columns.broker_user_id] = tokens.broker_user_id
                    if columns.redirect_uri:
                        fields[columns.redirect_uri] = getattr(self.gateway(provider), "redirect_uri", "")
                    fields[columns.auth_date] = utcnow()

                record_token_exchange(provider.value, error_type or "success")
                if error:
                    logger.error(
                        "Token exchange failed",
                        user_id=str(user.id),
                        broker=provider.value,
                        error_type=error_type,
                        error=error,
                    )
                else:
                    logger.info("Token exchange succeeded", user_id=str(user.id), broker=provider.value)

        user = await self.store.update_broker_fields(user.id, fields)
        return SaveResult(
            user=user,
            provider=provider,
            token_exchange_error=error,
            token_exchange_error_type=error_type,
        )

    # ================================
    # TOKENS
    # ================================

    async def validate_token(self, user_id: uuid.UUID | str, provider: DataProvider) -> TokenCheck:
        """Check the stored token with the broker; a rejected token is cleared at once"""
        user = await self.store.get(user_id)
        label = LABELS[provider]
        client_id = credential(user, provider, "client_id")
        access_token = credential(user, provider, "access_token")

        if not client_id or not access_token:
            return TokenCheck(success=False, is_valid=False, message=f"{label} credentials not found")

        try:
            validation = await self.gateway(provider).validate_access_token(client_id, access_token)
        except (NetworkFailure, InternalError) as e:
            record_token_validation(provider.value, "network_error" if e.retryable else "error")
            logger.error(
                "Token validation could not complete",
                user_id=str(user.id),
                broker=provider.value,
                error=e.message,
            )
            return TokenCheck(
                success=False,
                is_valid=False,
                message=f"Failed to validate {label} token",
                check_failed=True,
                network_error=e.retryable,
            )

        if validation.valid:
            record_token_validation(provider.value, "valid")
            return TokenCheck(success=True, is_valid=True, message=validation.message, funds=validation.funds)

        record_token_validation(provider.value, "invalid")
        await self.store.clear_broker_tokens(user.id, provider)
        return TokenCheck(success=False, is_valid=False, message=validation.message)

    async def clear_tokens_by_email(self, email: str, provider: DataProvider) -> User:
        if not email:
            raise ValidationError("Email is required")
        user = await self.store.get_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        return await self.store.clear_broker_tokens(user.id, provider)

    def auth_url(self, user: User, provider: DataProvider, state: Optional[str] = None) -> str:
        client_id = credential(user, provider, "client_id")
        if not client_id:
            raise ValidationError(f"Missing {LABELS[provider]} client ID. Please save your credentials first.")
        return self.gateway(provider).auth_url(client_id, state)

    # ================================
    # ACCOUNT DATA
    # ================================

    def _linked_provider(self, user: User) -> DataProvider:
        provider = user.provider
        if provider is None:
            raise ValidationError("No broker selected. Please choose a data provider.")
        if not user.is_broker_authorized(provider):
            raise ValidationError(
                f"{LABELS[provider]} account is not authorized. Please verify your {LABELS[provider]} account."
            )
        return provider

    async def _read(self, user: User, provider: DataProvider, method: str):
        client_id = credential(user, provider, "client_id")
        access_token = credential(user, provider, "access_token")
        try:
            return await getattr(self.gateway(provider), method)(client_id, access_token)
        except BrokerTokenInvalid:
            await self.store.clear_broker_tokens(user.id, provider)
            raise

    async def funds(self, user_id: uuid.UUID | str) -> dict:
        user = await self.store.get(user_id)
        provider = self._linked_provider(user)
        snapshot = await self._read(user, provider, "funds")

        used_percentage = (
            snapshot.used_amount / snapshot.total_balance * 100 if snapshot.total_balance > 0 else 0.0
        )
        return {
            "provider": provider.value,
            "fund_limit": snapshot.raw,
            "summary": {
                "total_balance": snapshot.total_balance,
                "used_amount": snapshot.used_amount,
                "available_balance": snapshot.available_balance,
                "used_percentage": used_percentage,
                "available_percentage": 100 - used_percentage,
            },
        }

    async def positions(self, user_id: uuid.UUID | str) -> tuple[DataProvider, PortfolioSnapshot]:
        user = await self.store.get(user_id)
        provider = self._linked_provider(user)
        return provider, await self._read(user, provider, "positions")

    async def holdings(self, user_id: uuid.UUID | str) -> tuple[DataProvider, PortfolioSnapshot]:
        user = await self.store.get(user_id)
        provider = self._linked_provider(user)
        return provider, await self._read(user, provider, "holdings")
