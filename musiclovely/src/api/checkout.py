"""
Checkout API - creates the pending order that a later Cakto webhook pays.
No auth: the storefront calls it anonymously; session_id makes retries safe.
"""
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.schemas.api_responses import CheckoutCreateRequest, CheckoutCreateResponse
from src.services.checkout import CheckoutConflictError, create_order_atomic

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/checkout", tags=["checkout"])


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _bad_request(error: str) -> JSONResponse:
    return _error(400, error)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(part) for part in err.get("loc", ()))
    return f"{field}: {err.get('msg', 'invalid value')}" if field else err.get("msg", "invalid value")


@router.post("/create", response_model=CheckoutCreateResponse)
async def create_checkout(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Create one quiz + one pending order, idempotent on session_id."""
    try:
        payload_dict = await request.json()
    except ValueError:
        return _bad_request("Invalid JSON body")
    if not isinstance(payload_dict, dict):
        return _bad_request("Invalid JSON body")

    try:
        payload = CheckoutCreateRequest(**payload_dict)
    except ValidationError as e:
        return _bad_request(_first_error(e))

    client_ip = request.client.host if request.client else None
    try:
        result = await create_order_atomic(
            db, payload,
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
    except CheckoutConflictError as e:
        logger.warning("Checkout rejected: %s", str(e))
        return _error(409, str(e))
    return CheckoutCreateResponse(**result)
