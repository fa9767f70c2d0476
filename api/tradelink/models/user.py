"""
User model holding identity, broker credentials and trading preferences
"""
from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import Column, String, Boolean, Float, TIMESTAMP, Uuid

from tradelink.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataProvider(str, enum.Enum):
    """Brokers a user can link"""

    FYERS = "fyers"
    ZERODHA = "zerodha"


# Broker credential columns per provider. None means never configured,
# "" means explicitly cleared.
FYERS_FIELDS = (
    "fyers_client_id",
    "fyers_secret_key",
    "fyers_auth_code",
    "fyers_access_token",
    "fyers_refresh_token",
    "fyers_redirect_uri",
    "fyers_user_id",
    "fyers_auth_date",
)

ZERODHA_FIELDS = (
    "zerodha_api_key",
    "zerodha_api_secret",
    "zerodha_request_token",
    "zerodha_access_token",
    "zerodha_public_token",
    "zerodha_user_id",
    "zerodha_auth_date",
)

TRADING_FIELDS = (
    "data_provider",
    "trading_enabled",
    "paper_trading_mode",
    "max_daily_loss",
    "max_position_size",
    "stop_loss_percentage",
)

BROKER_FIELDS = frozenset(FYERS_FIELDS + ZERODHA_FIELDS + TRADING_FIELDS)

# Fields wiped when a provider's tokens are known to be bad
TOKEN_FIELDS = {
    DataProvider.FYERS: ("fyers_access_token", "fyers_refresh_token", "fyers_auth_code"),
    DataProvider.ZERODHA: ("zerodha_access_token", "zerodha_public_token", "zerodha_request_token"),
}


class User(Base):
    """User model"""

    __tablename__ = "users"

    # Primary key
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Authentication
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False, default="")

    # Account status
    is_verified = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)
    last_login = Column(TIMESTAMP(timezone=True))

    # Broker selection
    data_provider = Column(String(20))

    # Fyers API credentials
    fyers_client_id = Column(String(255))
    fyers_secret_key = Column(String(255))
    fyers_auth_code = Column(String(2048))
    fyers_access_token = Column(String(2048))
    fyers_refresh_token = Column(String(2048))
    fyers_redirect_uri = Column(String(512))
    fyers_user_id = Column(String(100))
    fyers_auth_date = Column(TIMESTAMP(timezone=True))

    # Zerodha API credentials
    zerodha_api_key = Column(String(255))
    zerodha_api_secret = Column(String(255))
    zerodha_request_token = Column(String(255))
    zerodha_access_token = Column(String(255))
    zerodha_public_token = Column(String(255))
    zerodha_user_id = Column(String(100))
    zerodha_auth_date = Column(TIMESTAMP(timezone=True))

    # Trading configuration
    trading_enabled = Column(Boolean, nullable=False, default=False)
    paper_trading_mode = Column(Boolean, nullable=False, default=False)
    max_daily_loss = Column(Float, nullable=False, default=0.0)
    max_position_size = Column(Float, nullable=False, default=0.0)
    stop_loss_percentage = Column(Float, nullable=False, default=0.0)

    @property
    def provider(self) -> DataProvider | None:
        if not self.data_provider:
            return None
        return DataProvider(self.data_provider)

    def has_fyers_credentials(self) -> bool:
        return bool(self.fyers_client_id and self.fyers_secret_key)

    def has_zerodha_credentials(self) -> bool:
        return bool(self.zerodha_api_key and self.zerodha_api_secret)

    def is_broker_authorized(self, provider: DataProvider) -> bool:
        """A credential group without an access token is never authorized"""
        if provider == DataProvider.FYERS:
            return self.has_fyers_credentials() and bool(self.fyers_access_token)
        if provider == DataProvider.ZERODHA:
            return self.has_zerodha_credentials() and bool(self.zerodha_access_token)
        return False

    def last_auth_date(self, provider: DataProvider | None) -> datetime | None:
        """When the provider last issued an access token for this user"""
        if provider == DataProvider.FYERS:
            return self.fyers_auth_date
        if provider == DataProvider.ZERODHA:
            return self.zerodha_auth_date
        return None

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
