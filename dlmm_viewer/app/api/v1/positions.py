from fastapi import APIRouter, HTTPException, Depends, Query, Request
from typing import Any, Dict, List, Optional
import logging

from dlmm_viewer.core.errors import (
    DlmmViewerError, RateLimitError, InvalidAddressError, ServiceUnavailableError, UnsupportedCurrencyError
)
from dlmm_viewer.models.position import PositionLiquidityData
from dlmm_viewer.services.metrics import summarize
from dlmm_viewer.services.positions import PositionService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_position_service(request: Request) -> PositionService:
    """Dependency for the position service built at startup"""
    return request.app.state.position_service


def _split_addresses(values: List[str]) -> List[str]:
    # Accept both ?address=a&address=b and ?address=a,b
    return [a.strip() for value in values for a in value.split(",") if a.strip()]


def _render(positions: Dict[str, PositionLiquidityData], currency: str) -> Dict[str, Any]:
    ordered = sorted(positions.values(), key=lambda p: p.last_updated_at, reverse=True)
    return {
        "positions": [p.to_dict(currency) for p in ordered],
        "metrics": summarize(ordered, currency),
    }


async def _reconstruct(service: PositionService, addresses: List[str], currency: str, subject: str) -> Dict[str, Any]:
    try:
        positions = await service.get_positions_info(addresses)
        return {"status": "success", "data": _render(positions, currency)}
    except RateLimitError as e:
        raise HTTPException(status_code=429, detail={"error_code": e.code, "message": e.user_msg, "retry_after": e.retry_after})
    except (InvalidAddressError, UnsupportedCurrencyError) as e:
        raise HTTPException(status_code=400, detail={"error_code": e.code, "message": e.user_msg, "details": e.details})
    except ServiceUnavailableError as e:
        raise HTTPException(status_code=503, detail={"error_code": e.code, "message": e.user_msg})
    except DlmmViewerError as e:
        logger.error(f"Upstream error for {subject}: {e}")
        raise HTTPException(status_code=502, detail={"error_code": e.code, "message": e.user_msg})
    except Exception:
        logger.exception(f"Unexpected error for {subject}")
        raise HTTPException(status_code=500, detail={"error_code": "UNKNOWN", "message": "An unexpected error occurred."})


@router.get("/positions")
async def get_positions(
    address: List[str] = Query(..., description="Position addresses"),
    currency: Optional[str] = Query(None, description="Settlement currency mint"),
    service: PositionService = Depends(get_position_service)
) -> dict[str, Any]:
    """Reconstruct positions and their profit and loss"""
    addresses = _split_addresses(address)
    if not addresses:
        raise HTTPException(status_code=400, detail={"error_code": "INVALID_ADDRESS", "message": "No position address given."})
    return await _reconstruct(service, addresses, currency or service.settings.reference_mint, ",".join(addresses))


@router.get("/wallet/{owner}/positions")
async def get_wallet_positions(
    owner: str,
    currency: Optional[str] = Query(None, description="Settlement currency mint"),
    service: PositionService = Depends(get_position_service)
) -> dict[str, Any]:
    """Discover a wallet's positions on chain and reconstruct them"""
    try:
        addresses = await service.discover_positions(owner)
    except InvalidAddressError as e:
        raise HTTPException(status_code=400, detail={"error_code": e.code, "message": e.user_msg})
    except ServiceUnavailableError as e:
        raise HTTPException(status_code=503, detail={"error_code": e.code, "message": e.user_msg})
    except DlmmViewerError as e:
        logger.error(f"Position discovery failed for {owner}: {e}")
        raise HTTPException(status_code=502, detail={"error_code": e.code, "message": e.user_msg})

    result = await _reconstruct(service, addresses, currency or service.settings.reference_mint, owner)
    result["data"]["owner"] = owner
    return result
