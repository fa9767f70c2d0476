"""
Portfolio router exposing funds, positions and holdings from the linked broker
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
import structlog

from tradelink.models.user import User
from tradelink.routers.auth import get_current_user
from tradelink.routers.broker import get_broker_service
from tradelink.services.broker_service import BrokerLinkService

logger = structlog.get_logger()

router = APIRouter(prefix="/portfolio", tags=["Portfolio"])

# ================================
# PYDANTIC MODELS
# ================================

class FundsSummary(BaseModel):
    total_balance: float
    used_amount: float
    available_balance: float
    used_percentage: float
    available_percentage: float

class FundsResponse(BaseModel):
    success: bool = True
    provider: str
    fund_limit: Any = None
    summary: FundsSummary
    last_updated: datetime

class PortfolioItemsResponse(BaseModel):
    success: bool = True
    provider: str
    items: List[Dict[str, Any]]
    overall: Optional[Dict[str, Any]] = None
    last_updated: datetime

# ================================
# PORTFOLIO ENDPOINTS
# ================================

@router.get("/funds", response_model=FundsResponse)
async def get_funds(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Fund limits and balance summary"""
    logger.info("Fetching funds", user_id=str(current_user.id))
    funds = await service.funds(current_user.id)
    return FundsResponse(last_updated=datetime.now(timezone.utc), **funds)

@router.get("/positions", response_model=PortfolioItemsResponse)
async def get_positions(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Net positions"""
    logger.info("Fetching positions", user_id=str(current_user.id))
    provider, snapshot = await service.positions(current_user.id)
    return PortfolioItemsResponse(
        provider=provider.value,
        items=snapshot.items,
        overall=snapshot.overall,
        last_updated=datetime.now(timezone.utc),
    )

@router.get("/holdings", response_model=PortfolioItemsResponse)
async def get_holdings(
    current_user: Annotated[User, Depends(get_current_user)],
    service: BrokerLinkService = Depends(get_broker_service),
):
    """Long-term holdings"""
    logger.info("Fetching holdings", user_id=str(current_user.id))
    provider, snapshot = await service.holdings(current_user.id)
    return PortfolioItemsResponse(
        provider=provider.value,
        items=snapshot.items,
        overall=snapshot.overall,
        last_updated=datetime.now(timezone.utc),
    )
