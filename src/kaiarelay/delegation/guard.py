"""Validation guard for delegation requests.

Runs before any signing or broadcast. Checks are ordered cheapest first and
stop at the first violation; the balance lookup is the only network call and
only happens for value-bearing requests.
"""

import logging
from typing import Any, Optional

from kaiarelay.delegation.contracts import DelegationRequest
from kaiarelay.errors import InvalidTransactionFields, ValidationError
from kaiarelay.rpc.client import KaiaRpcClient
from kaiarelay.transaction.types import MAX_FEE_RATIO, TxType, is_address, resolve_tx_type

logger = logging.getLogger(__name__)

DEPLOY = TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY
EXECUTION = TxType.FEE_DELEGATED_SMART_CONTRACT_EXECUTION
MEMO = TxType.FEE_DELEGATED_VALUE_TRANSFER_MEMO
RATIO = TxType.FEE_DELEGATED_VALUE_TRANSFER_WITH_RATIO


def parse_quantity(name: str, value: Any) -> int:
    """Parse a non-negative integer from an int, decimal string or hex string.

    Raises:
        ValidationError: If the value is not a non-negative integer
    """
    if isinstance(value, bool):
        raise ValidationError(name, f"'{value}' is not a number")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            raise ValidationError(name, f"'{value}' is not a number")
    else:
        raise ValidationError(name, f"'{value}' is not a number")

    if parsed < 0:
        raise ValidationError(name, "must not be negative")
    return parsed


def resolve_type(request: DelegationRequest) -> TxType:
    """Transaction type named by the request, or inferred from its fields.

    Without an explicit type: call data means contract execution, a memo
    means memo transfer, anything else is a plain value transfer.
    """
    if request.type:
        try:
            return resolve_tx_type(request.type)
        except InvalidTransactionFields:
            raise ValidationError("type", f"unsupported transaction type '{request.type}'")

    if request.data:
        return EXECUTION
    if request.memo:
        return MEMO
    return TxType.FEE_DELEGATED_VALUE_TRANSFER


class ValidationGuard:
    """Sanity checks enforcing the fee payer's sponsorship ceilings."""

    def __init__(self, max_gas_limit: int, max_value: int, client: Optional[KaiaRpcClient] = None):
        self.max_gas_limit = max_gas_limit
        self.max_value = max_value
        self.client = client

    async def validate(self, request: DelegationRequest) -> TxType:
        """Run every check in order.

        Returns:
            The resolved transaction type

        Raises:
            ValidationError: Naming the first violated constraint
            RpcError: If the balance lookup fails
        """
        self.check_addresses(request)
        gas = parse_quantity("gas", request.gas)
        value = parse_quantity("value", request.value)
        self.check_limits(gas, value)
        tx_type = self.check_type(request)

        if value > 0:
            await self.check_balance(request.from_address, value)

        return tx_type

    def check_addresses(self, request: DelegationRequest) -> None:
        if not is_address(request.from_address):
            raise ValidationError("from", f"invalid address '{request.from_address}'")
        if request.to is not None and not is_address(request.to):
            raise ValidationError("to", f"invalid address '{request.to}'")

    def check_limits(self, gas: int, value: int) -> None:
        """Enforce the gas and value ceilings."""
        if gas > self.max_gas_limit:
            raise ValidationError("gas", f"gas limit {gas} exceeds maximum {self.max_gas_limit}")
        if value > self.max_value:
            raise ValidationError("value", f"value {value} exceeds maximum {self.max_value} peb")

    def check_type(self, request: DelegationRequest) -> TxType:
        """Resolve the type and check the request carries exactly what it needs."""
        tx_type = resolve_type(request)

        if tx_type == DEPLOY:
            if request.to is not None:
                raise ValidationError("to", "contract deploy must not have a recipient")
        elif request.to is None:
            raise ValidationError("to", f"recipient is required for {tx_type.name}")

        if tx_type in (EXECUTION, DEPLOY):
            if not request.data:
                raise ValidationError("data", f"call data is required for {tx_type.name}")
        elif tx_type == MEMO:
            if not request.memo and not request.data:
                raise ValidationError("memo", "memo is required for value_transfer_memo")
        elif request.data:
            raise ValidationError("data", f"call data is not allowed for {tx_type.name}")

        if request.memo and tx_type != MEMO:
            raise ValidationError("memo", f"memo is not allowed for {tx_type.name}")

        if tx_type == RATIO:
            if request.fee_ratio is None:
                raise ValidationError("feeRatio", "fee ratio is required for value_transfer_with_ratio")
            if not 1 <= request.fee_ratio <= MAX_FEE_RATIO:
                raise ValidationError("feeRatio", f"fee ratio must be between 1 and {MAX_FEE_RATIO}")
        elif request.fee_ratio is not None:
            raise ValidationError("feeRatio", f"fee ratio is not allowed for {tx_type.name}")

        return tx_type

    async def check_balance(self, address: str, value: int) -> None:
        if self.client is None:
            raise ValidationError("balance", "no node client configured for balance checks")

        balance = await self.client.get_balance(address)
        if balance < value:
            logger.info(f"Insufficient balance for {address}: {balance} < {value}")
            raise ValidationError("balance", f"balance {balance} is below value {value} peb")
