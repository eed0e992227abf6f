"""Withdrawal and raw broadcast endpoints."""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field, field_validator
from web3 import Web3

from ortenberg.api.deps import get_manager, require_api_key
from ortenberg.services.withdrawal_manager import MAX_PAGE_SIZE, WithdrawalManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v2", dependencies=[Depends(require_api_key)])

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
HEX_PATTERN = re.compile(r"^0x[a-fA-F0-9]+$")
# Plain decimal: no sign, exponent, digit separators or non-ASCII digits
AMOUNT_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)?$")


def _validate_address(v: str) -> str:
    v = v.strip()
    if not ADDRESS_PATTERN.match(v):
        raise ValueError("Invalid Ethereum address")
    return Web3.to_checksum_address(v)


class InitiateWithdrawalRequest(BaseModel):
    """Partially-signed multi-sig withdrawal submitted by the bank."""

    request_id: str = Field(..., min_length=1, max_length=255, description="Bank-supplied idempotency key")
    treasury_contract_address: str = Field(..., description="Multi-sig treasury contract")
    destination_address: str = Field(..., description="Recipient address")
    token_contract_address: str = Field(..., description="ERC-20 token contract")
    amount: str = Field(..., description="Human-readable token amount, e.g. '150.25'")
    partially_signed_tx: str = Field(..., description="0x-prefixed partially-signed payload")

    @field_validator("request_id")
    @classmethod
    def validate_request_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("request_id must not be empty")
        return v

    @field_validator("treasury_contract_address", "destination_address", "token_contract_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_address(v)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        """Validate amount is a positive decimal number, kept as submitted."""
        v = v.strip()
        if not AMOUNT_PATTERN.match(v):
            raise ValueError(f"Invalid amount format: {v}")
        try:
            amount = Decimal(v)
        except InvalidOperation:
            raise ValueError(f"Invalid amount format: {v}")
        if amount <= 0:
            raise ValueError("Amount must be positive")
        return v

    @field_validator("partially_signed_tx")
    @classmethod
    def validate_partially_signed_tx(cls, v: str) -> str:
        if not HEX_PATTERN.match(v):
            raise ValueError("Invalid partially signed transaction format")
        return v


class CancelWithdrawalRequest(BaseModel):
    """Cancel a request before processing starts."""

    request_id: str = Field(..., min_length=1, max_length=255)


class RawTransactionRequest(BaseModel):
    """Client-signed transaction to relay."""

    raw_tx: str = Field(..., description="0x-prefixed signed transaction")

    @field_validator("raw_tx")
    @classmethod
    def validate_raw_tx(cls, v: str) -> str:
        if not HEX_PATTERN.match(v):
            raise ValueError("Invalid raw transaction format.")
        return v


@router.post("/withdrawal/initiate", status_code=202, tags=["Withdrawals"])
async def initiate_withdrawal(
    request: InitiateWithdrawalRequest,
    manager: WithdrawalManager = Depends(get_manager),
) -> dict:
    """Accept a withdrawal for asynchronous processing.

    202 on acceptance; 409 if the request_id was already submitted.
    """
    result = await manager.submit_withdrawal(
        request_id=request.request_id,
        treasury_contract_address=request.treasury_contract_address,
        destination_address=request.destination_address,
        token_contract_address=request.token_contract_address,
        amount=request.amount,
        partially_signed_tx=request.partially_signed_tx,
    )
    return {"status": "PENDING", **result}


@router.post("/withdrawal/cancel", tags=["Withdrawals"])
async def cancel_withdrawal(
    request: CancelWithdrawalRequest,
    manager: WithdrawalManager = Depends(get_manager),
) -> dict:
    """Cancel a request that is still PENDING_SIGNATURE."""
    return await manager.cancel_request(request.request_id)


@router.get("/withdrawal/status/{request_id}", tags=["Withdrawals"])
async def get_withdrawal_status(
    request_id: str,
    manager: WithdrawalManager = Depends(get_manager),
) -> dict:
    """Current status of a request with its history."""
    return await manager.get_request_status(request_id)


@router.get("/withdrawal/list", tags=["Withdrawals"])
async def list_withdrawals(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    manager: WithdrawalManager = Depends(get_manager),
) -> dict:
    """Paginated request list for the dashboard, newest first."""
    return await manager.list_requests(page=page, page_size=page_size)


@router.post("/broadcast/raw-transaction", status_code=202, tags=["Broadcast"])
async def broadcast_raw_transaction(
    request: RawTransactionRequest,
    x_client_id: Optional[str] = Header(None),
    manager: WithdrawalManager = Depends(get_manager),
) -> dict:
    """Relay a client-signed transaction and track it to confirmation."""
    return await manager.submit_raw_broadcast(request.raw_tx, client_id=x_client_id)
