"""Balance, send and status endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chainrail.api.deps import get_service, to_http_error
from chainrail.crypto import KeyMode
from chainrail.errors import ChainError
from chainrail.services import TransactionService

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response models
class SendRequest(BaseModel):
    """Native transfer request."""
    chain: str
    from_address: str
    to_address: str
    amount: str  # Decimal as string
    key_material: str = Field(repr=False)  # Encrypted envelope or hex key
    key_mode: KeyMode = KeyMode.AUTO
    options: Optional[dict] = None


class TransactionResponse(BaseModel):
    """Normalized transaction result."""
    chain: str
    txReference: str
    status: str  # pending, confirmed, failed
    blockHeightOrSlot: Optional[int] = None
    confirmations: Optional[int] = None


class BalanceResponse(BaseModel):
    """Native balance in whole units."""
    chain: str
    address: str
    balance: str


@router.get("/balance/{chain}/{address}", response_model=BalanceResponse)
async def get_balance(
    chain: str,
    address: str,
    service: TransactionService = Depends(get_service),
) -> BalanceResponse:
    """Get native balance of an address."""
    try:
        balance = await service.get_balance(chain, address)
    except ChainError as e:
        raise to_http_error(e) from e
    return BalanceResponse(chain=chain.lower(), address=address, balance=balance)


@router.post("/send", response_model=TransactionResponse)
async def send_transaction(
    request: SendRequest,
    service: TransactionService = Depends(get_service),
) -> TransactionResponse:
    """Build, sign and broadcast a native transfer."""
    try:
        result = await service.send(
            request.chain,
            request.from_address,
            request.to_address,
            request.amount,
            request.key_material,
            options=request.options,
            key_mode=request.key_mode,
        )
    except ChainError as e:
        raise to_http_error(e) from e
    return TransactionResponse(**result.to_dict())


@router.get("/tx/{chain}/{tx_reference}", response_model=TransactionResponse)
async def get_transaction_status(
    chain: str,
    tx_reference: str,
    service: TransactionService = Depends(get_service),
) -> TransactionResponse:
    """Get normalized transaction status. Unknown references are pending."""
    try:
        result = await service.get_status(chain, tx_reference)
    except ChainError as e:
        raise to_http_error(e) from e
    return TransactionResponse(**result.to_dict())
