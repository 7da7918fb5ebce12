"""
Settlement adapter — time-bounded access to the configured gateway.

Every gateway call from the ledger goes through SettlementAdapter, which:
  - bounds it with SETTLEMENT_TIMEOUT_SECONDS (ExternalGatewayTimeoutError)
  - turns anything unexpected the gateway raises into
    ExternalGatewayFailureError, so callers only handle domain errors
  - owns the transfer fee schedule

The adapter never touches the database. Callers must not hold an atomic
unit (or any account lock) while awaiting it.
"""

import asyncio
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, TypeVar

from app.clients.settlement import (
    DestinationInfo,
    GatewayResult,
    HttpSettlementGateway,
    SettlementGateway,
    SettlementRequest,
    SimulatedSettlementGateway,
    SupportedBank,
)
from app.config import settings
from app.exceptions import BankAPIError, ExternalGatewayFailureError, ExternalGatewayTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BASE_FEE_RATE = Decimal("0.005")
_MINIMUM_FEE_CENTS = Decimal(500)
_INTERNATIONAL_FEE_CENTS = Decimal(1500)
_CURRENCY_FEE_RATE = Decimal("0.002")


def calculate_transfer_fee(amount_cents: int, bank_code: str, currency: str) -> int:
    """
    Fee for an outbound transfer, in cents.

    0.5% of the amount with a $5.00 minimum, plus $15.00 for banks outside
    the domestic range (codes not starting with "0"), plus 0.2% for
    non-USD transfers. Rounded half-up to the cent.

    Examples:
        calculate_transfer_fee(10_000, "001", "USD")   -> 500
        calculate_transfer_fee(200_000, "001", "USD")  -> 1000
        calculate_transfer_fee(10_000, "101", "USD")   -> 2000
    """
    amount = Decimal(amount_cents)
    fee = max(amount * _BASE_FEE_RATE, _MINIMUM_FEE_CENTS)
    if not bank_code.startswith("0"):
        fee += _INTERNATIONAL_FEE_CENTS
    if currency != "USD":
        fee += amount * _CURRENCY_FEE_RATE
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class SettlementAdapter:
    def __init__(self, gateway: SettlementGateway, timeout: float | None = None):
        self.gateway = gateway
        self.timeout = settings.SETTLEMENT_TIMEOUT_SECONDS if timeout is None else timeout

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Settlement gateway timed out",
                extra={"operation": operation, "timeout_seconds": self.timeout},
            )
            raise ExternalGatewayTimeoutError(self.timeout) from exc
        except BankAPIError:
            raise
        except Exception as exc:
            logger.exception(
                "Settlement gateway raised unexpectedly", extra={"operation": operation}
            )
            raise ExternalGatewayFailureError(f"Settlement gateway error during {operation}") from exc

    async def verify_destination(
        self, account_number: str, bank_code: str
    ) -> DestinationInfo | None:
        return await self._call(
            self.gateway.verify_destination(account_number, bank_code), "verify_destination"
        )

    async def initiate(self, request: SettlementRequest) -> GatewayResult:
        return await self._call(self.gateway.initiate(request), "initiate")

    async def poll_status(self, reference: str) -> GatewayResult:
        return await self._call(self.gateway.poll_status(reference), "poll_status")

    async def supported_banks(self) -> list[SupportedBank]:
        return await self._call(self.gateway.supported_banks(), "supported_banks")

    def quote_fee(self, amount_cents: int, bank_code: str, currency: str) -> int:
        return calculate_transfer_fee(amount_cents, bank_code, currency)


def build_gateway() -> SettlementGateway:
    """Gateway selected by SETTLEMENT_MODE."""
    if settings.SETTLEMENT_MODE == "http":
        return HttpSettlementGateway(
            base_url=settings.SETTLEMENT_BASE_URL,
            timeout=settings.SETTLEMENT_TIMEOUT_SECONDS,
        )
    return SimulatedSettlementGateway()
