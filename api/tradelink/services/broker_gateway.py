"""
Broker gateways: authorization-code exchange, token validation and
read-only account data for Fyers and Zerodha
"""
import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlencode

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
import structlog

from tradelink.core.config import settings
from tradelink.core.exceptions import (
    BrokerTokenInvalid,
    ExchangeRejected,
    InternalError,
    NetworkFailure,
)
from tradelink.core.metrics import record_broker_api_request
from tradelink.models.user import DataProvider

logger = structlog.get_logger()

# ================================
# RESULT MODELS
# ================================

class TokenPair(BaseModel):
    """Tokens issued by a successful authorization-code exchange"""
    access_token: str
    refresh_token: str = ""
    public_token: str = ""
    broker_user_id: str = ""


class TokenValidation(BaseModel):
    valid: bool
    message: str
    funds: Any = None


class FundsSnapshot(BaseModel):
    raw: Any = None
    total_balance: float = 0.0
    used_amount: float = 0.0
    available_balance: float = 0.0


class PortfolioSnapshot(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    overall: Optional[Dict[str, Any]] = None

# ================================
# BROKER RESPONSE SHAPES
# ================================

class FyersOk(BaseModel):
    model_config = ConfigDict(extra="allow")

    s: Literal["ok"]
    code: int
    message: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class FyersError(BaseModel):
    model_config = ConfigDict(extra="allow")

    s: Literal["error"]
    code: int
    message: str = ""


FyersResponse = Annotated[Union[FyersOk, FyersError], Field(discriminator="s")]
fyers_response_adapter = TypeAdapter(FyersResponse)


class KiteOk(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Literal["success"]
    data: Any = None


class KiteError(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Literal["error"]
    message: str = ""
    error_type: str = ""


KiteResponse = Annotated[Union[KiteOk, KiteError], Field(discriminator="status")]
kite_response_adapter = TypeAdapter(KiteResponse)


def parse_fyers_response(payload: Any) -> Union[FyersOk, FyersError]:
    """Parse a Fyers body into its tagged shape; anything else is an internal error"""
    try:
        return fyers_response_adapter.validate_python(payload)
    except PydanticValidationError:
        logger.error("Unrecognised Fyers response shape", payload_type=type(payload).__name__)
        raise InternalError("Unexpected response from Fyers")


def parse_kite_response(payload: Any) -> Union[KiteOk, KiteError]:
    try:
        return kite_response_adapter.validate_python(payload)
    except PydanticValidationError:
        logger.error("Unrecognised Kite response shape", payload_type=type(payload).__name__)
        raise InternalError("Unexpected response from Zerodha")

# ================================
# GATEWAY INTERFACE
# ================================

class BrokerGateway(ABC):
    """Abstract base class for broker gateways"""

    provider: DataProvider

    def __init__(self, base_url: str, timeout: float = settings.BROKER_HTTP_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.provider.value

    @abstractmethod
    def auth_url(self, client_id: str, state: str | None = None) -> str:
        """Consent page the user is redirected to"""
        pass

    @abstractmethod
    async def exchange_auth_code(self, client_id: str, secret_key: str, auth_code: str) -> TokenPair:
        """Exchange a single-use authorization code for tokens"""
        pass

    @abstractmethod
    async def validate_access_token(self, client_id: str, access_token: str) -> TokenValidation:
        """Check a token against a lightweight read endpoint"""
        pass

    @abstractmethod
    async def funds(self, client_id: str, access_token: str) -> FundsSnapshot:
        pass

    @abstractmethod
    async def positions(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        pass

    @abstractmethod
    async def holdings(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        pass

    async def _request(self, method: str, path: str, **kwargs) -> tuple[int, Any]:
        """Perform one broker call, returning the status and decoded JSON body (or None)"""
        url = f"{self.base_url}{path}"
        endpoint = path.lstrip("/")

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.request(method, url, **kwargs) as response:
                    status = response.status
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            record_broker_api_request(self.name, endpoint, "network_error")
            logger.error("Broker request failed", broker=self.name, endpoint=endpoint, error=str(e))
            raise NetworkFailure(f"Could not reach {self.name.capitalize()}. Please try again.")

        record_broker_api_request(self.name, endpoint, str(status))
        logger.debug("Broker request completed", broker=self.name, endpoint=endpoint, status=status)

        if payload is None and status >= 500:
            raise NetworkFailure(f"{self.name.capitalize()} is temporarily unavailable. Please try again.")
        return status, payload

# ================================
# FYERS API V3
# ================================

class FyersGateway(BrokerGateway):
    """Fyers API v3 integration"""

    provider = DataProvider.FYERS

    def __init__(
        self,
        base_url: str = settings.FYERS_API_BASE_URL,
        redirect_uri: str = settings.fyers_redirect_uri,
        timeout: float = settings.BROKER_HTTP_TIMEOUT,
    ):
        super().__init__(base_url, timeout)
        self.redirect_uri = redirect_uri

    def auth_url(self, client_id: str, state: str | None = None) -> str:
        if not client_id:
            raise InternalError("Fyers client ID is required")
        query = urlencode({
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state or settings.FYERS_AUTH_STATE,
        })
        return f"{self.base_url}/generate-authcode?{query}"

    @staticmethod
    def _auth_headers(client_id: str, access_token: str) -> dict:
        return {"Authorization": f"{client_id}:{access_token}"}

    async def exchange_auth_code(self, client_id: str, secret_key: str, auth_code: str) -> TokenPair:
        app_id_hash = hashlib.sha256(f"{client_id}:{secret_key}".encode("utf-8")).hexdigest()
        _, payload = await self._request(
            "POST",
            "/validate-authcode",
            json={
                "grant_type": "authorization_code",
                "appIdHash": app_id_hash,
                "code": auth_code,
            },
        )
        if payload is None:
            raise InternalError("Unexpected response from Fyers")

        response = parse_fyers_response(payload)
        if isinstance(response, FyersOk) and response.code == 200 and response.access_token:
            return TokenPair(
                access_token=response.access_token,
                refresh_token=response.refresh_token or "",
            )

        logger.warning("Fyers rejected auth code", code=response.code, message=response.message)
        raise ExchangeRejected(
            response.message or "Failed to exchange auth code for access token",
            error_code=response.code,
        )

    async def _read(self, path: str, client_id: str, access_token: str) -> FyersOk:
        status, payload = await self._request(
            "GET", path, headers=self._auth_headers(client_id, access_token)
        )
        if not 200 <= status < 300 or payload is None:
            raise BrokerTokenInvalid("Fyers token is invalid or expired")

        response = parse_fyers_response(payload)
        if isinstance(response, FyersError) or response.code != 200:
            raise BrokerTokenInvalid(response.message or "Fyers token is invalid or expired")
        return response

    async def validate_access_token(self, client_id: str, access_token: str) -> TokenValidation:
        try:
            response = await self._read("/funds", client_id, access_token)
        except BrokerTokenInvalid:
            return TokenValidation(valid=False, message="Fyers token is invalid or expired")

        return TokenValidation(
            valid=True,
            message="Fyers token is valid",
            funds=(response.model_extra or {}).get("fund_limit"),
        )

    async def funds(self, client_id: str, access_token: str) -> FundsSnapshot:
        response = await self._read("/funds", client_id, access_token)
        fund_limit = (response.model_extra or {}).get("fund_limit") or []

        def amount(title: str) -> float:
            for item in fund_limit:
                if item.get("title") == title:
                    return float(item.get("equityAmount") or 0)
            return 0.0

        return FundsSnapshot(
            raw=fund_limit,
            total_balance=amount("Total Balance"),
            used_amount=amount("Utilized Amount"),
            available_balance=amount("Available Balance"),
        )

    async def positions(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        response = await self._read("/positions", client_id, access_token)
        extra = response.model_extra or {}
        return PortfolioSnapshot(items=extra.get("netPositions") or [], overall=extra.get("overall"))

    async def holdings(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        response = await self._read("/holdings", client_id, access_token)
        extra = response.model_extra or {}
        return PortfolioSnapshot(items=extra.get("holdings") or [], overall=extra.get("overall"))

# ================================
# ZERODHA KITE CONNECT
# ================================

class ZerodhaGateway(BrokerGateway):
    """Zerodha Kite Connect v3 integration"""

    provider = DataProvider.ZERODHA

    def __init__(
        self,
        base_url: str = settings.ZERODHA_API_BASE_URL,
        login_url: str = settings.ZERODHA_LOGIN_URL,
        timeout: float = settings.BROKER_HTTP_TIMEOUT,
    ):
        super().__init__(base_url, timeout)
        self.login_url = login_url

    def auth_url(self, client_id: str, state: str | None = None) -> str:
        if not client_id:
            raise InternalError("Zerodha API key is required")
        return f"{self.login_url}?{urlencode({'v': 3, 'api_key': client_id})}"

    @staticmethod
    def _auth_headers(api_key: str, access_token: str) -> dict:
        return {
            "X-Kite-Version": "3",
            "Authorization": f"token {api_key}:{access_token}",
        }

    async def exchange_auth_code(self, client_id: str, secret_key: str, auth_code: str) -> TokenPair:
        checksum = hashlib.sha256(f"{client_id}{auth_code}{secret_key}".encode("utf-8")).hexdigest()
        _, payload = await self._request(
            "POST",
            "/session/token",
            headers={"X-Kite-Version": "3"},
            data={"api_key": client_id, "request_token": auth_code, "checksum": checksum},
        )
        if payload is None:
            raise InternalError("Unexpected response from Zerodha")

        response = parse_kite_response(payload)
        if isinstance(response, KiteOk) and isinstance(response.data, dict) and response.data.get("access_token"):
            return TokenPair(
                access_token=response.data["access_token"],
                refresh_token=response.data.get("refresh_token") or "",
                public_token=response.data.get("public_token") or "",
                broker_user_id=response.data.get("user_id") or "",
            )

        message = getattr(response, "message", "") or "Failed to exchange request token for access token"
        logger.warning("Zerodha rejected request token", error_type=getattr(response, "error_type", ""))
        raise ExchangeRejected(message)

    async def _read(self, path: str, api_key: str, access_token: str) -> KiteOk:
        status, payload = await self._request("GET", path, headers=self._auth_headers(api_key, access_token))
        if not 200 <= status < 300 or payload is None:
            raise BrokerTokenInvalid("Zerodha token is invalid or expired")

        response = parse_kite_response(payload)
        if isinstance(response, KiteError):
            raise BrokerTokenInvalid(response.message or "Zerodha token is invalid or expired")
        return response

    async def validate_access_token(self, client_id: str, access_token: str) -> TokenValidation:
        try:
            response = await self._read("/user/margins", client_id, access_token)
        except BrokerTokenInvalid:
            return TokenValidation(valid=False, message="Zerodha token is invalid or expired")
        return TokenValidation(valid=True, message="Zerodha token is valid", funds=response.data)

    async def funds(self, client_id: str, access_token: str) -> FundsSnapshot:
        response = await self._read("/user/margins", client_id, access_token)
        equity = (response.data or {}).get("equity") or {}
        available = float(equity.get("net") or 0)
        used = float((equity.get("utilised") or {}).get("debits") or 0)
        return FundsSnapshot(
            raw=response.data,
            total_balance=available + used,
            used_amount=used,
            available_balance=available,
        )

    async def positions(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        response = await self._read("/portfolio/positions", client_id, access_token)
        return PortfolioSnapshot(items=(response.data or {}).get("net") or [])

    async def holdings(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        response = await self._read("/portfolio/holdings", client_id, access_token)
        return PortfolioSnapshot(items=response.data or [])

# ================================
# GATEWAY REGISTRY
# ================================

broker_gateways: Dict[DataProvider, BrokerGateway] = {
    DataProvider.FYERS: FyersGateway(),
    DataProvider.ZERODHA: ZerodhaGateway(),
}


def get_broker_gateways() -> Dict[DataProvider, BrokerGateway]:
    """Dependency returning the configured gateways; overridden in tests"""
    return broker_gateways
