"""
Settlement gateway clients — the boundary to other banks.

Any transfer addressed to a bank code other than ours leaves the ledger
through a SettlementGateway. The contract is deliberately small:

  - verify_destination(account_number, bank_code) -> DestinationInfo | None
  - initiate(request) -> GatewayResult (completed, failed, pending or processing)
  - poll_status(reference) -> GatewayResult
  - supported_banks() -> list[SupportedBank]

Two implementations live here:

  - HttpSettlementGateway talks to a real settlement service over HTTP.
  - SimulatedSettlementGateway keeps an in-memory directory of partner banks
    and decides outcomes with an injectable function and random source,
    so development environments behave like a real network without one.

Neither is called by the transfer code directly; the SettlementAdapter in
app.services.settlement_adapter wraps whichever one is configured.
"""

import enum
import random
import uuid
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx

from app.exceptions import ExternalGatewayFailureError, ExternalGatewayTimeoutError


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DestinationInfo:
    account_number: str
    bank_code: str
    account_name: str
    bank_name: str


@dataclass(frozen=True)
class SupportedBank:
    code: str
    name: str
    country: str


@dataclass(frozen=True)
class SettlementRequest:
    reference: str
    from_account_number: str
    destination_account_number: str
    destination_bank_code: str
    amount_cents: int
    currency: str
    narration: str | None = None


@dataclass(frozen=True)
class GatewayResult:
    status: SettlementStatus
    external_reference: str | None = None
    fee_cents: int | None = None
    message: str = ""

    @property
    def is_final(self) -> bool:
        return self.status in (SettlementStatus.COMPLETED, SettlementStatus.FAILED)


class SettlementGateway(Protocol):
    async def verify_destination(
        self, account_number: str, bank_code: str
    ) -> DestinationInfo | None: ...

    async def initiate(self, request: SettlementRequest) -> GatewayResult: ...

    async def poll_status(self, reference: str) -> GatewayResult: ...

    async def supported_banks(self) -> list[SupportedBank]: ...


# ---------------------------------------------------------------------------
# HTTP gateway
# ---------------------------------------------------------------------------

class HttpSettlementGateway:
    """Client for an external settlement service."""

    def __init__(
        self,
        base_url: str,
        timeout: float,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send one request and return the response (404 is not raised).

        Raises:
            ExternalGatewayTimeoutError: On connect/read timeout
            ExternalGatewayFailureError: On transport errors and non-2xx replies
        """
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, f"{self.base_url}{path}", **kwargs)
            if response.status_code != 404:
                response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            raise ExternalGatewayTimeoutError(self.timeout) from e
        except httpx.HTTPStatusError as e:
            raise ExternalGatewayFailureError(
                f"Settlement gateway error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise ExternalGatewayFailureError(f"Settlement gateway unreachable: {e}") from e

    @staticmethod
    def _parse_result(data: dict) -> GatewayResult:
        try:
            return GatewayResult(
                status=SettlementStatus(data["status"]),
                external_reference=data.get("external_reference"),
                fee_cents=data.get("fee_cents"),
                message=data.get("message", ""),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ExternalGatewayFailureError(f"Invalid settlement response: {e}") from e

    async def verify_destination(
        self, account_number: str, bank_code: str
    ) -> DestinationInfo | None:
        response = await self._request(
            "GET",
            "/accounts/verify",
            params={"account_number": account_number, "bank_code": bank_code},
        )
        if response.status_code == 404:
            return None
        try:
            data = response.json()
            return DestinationInfo(
                account_number=account_number,
                bank_code=bank_code,
                account_name=data["account_name"],
                bank_name=data["bank_name"],
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ExternalGatewayFailureError(f"Invalid verification response: {e}") from e

    async def initiate(self, request: SettlementRequest) -> GatewayResult:
        response = await self._request(
            "POST",
            "/transfers",
            json={
                "reference": request.reference,
                "from_account_number": request.from_account_number,
                "account_number": request.destination_account_number,
                "bank_code": request.destination_bank_code,
                "amount_cents": request.amount_cents,
                "currency": request.currency,
                "narration": request.narration,
            },
        )
        if response.status_code == 404:
            raise ExternalGatewayFailureError("Settlement gateway has no transfer endpoint")
        return self._parse_result(response.json())

    async def poll_status(self, reference: str) -> GatewayResult:
        response = await self._request("GET", f"/transfers/{reference}")
        if response.status_code == 404:
            # Never reached the gateway; the submission itself was lost
            return GatewayResult(status=SettlementStatus.FAILED, message="Unknown transfer")
        return self._parse_result(response.json())

    async def supported_banks(self) -> list[SupportedBank]:
        response = await self._request("GET", "/banks")
        try:
            return [
                SupportedBank(code=b["code"], name=b["name"], country=b["country"])
                for b in response.json().get("banks", [])
            ]
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ExternalGatewayFailureError(f"Invalid bank list: {e}") from e


# ---------------------------------------------------------------------------
# Simulated gateway
# ---------------------------------------------------------------------------

SUPPORTED_BANKS = [
    SupportedBank(code="001", name="Chase Bank", country="United States"),
    SupportedBank(code="002", name="Bank of America", country="United States"),
    SupportedBank(code="003", name="Wells Fargo", country="United States"),
    SupportedBank(code="004", name="Citibank", country="United States"),
    SupportedBank(code="101", name="Deutsche Bank", country="Germany"),
    SupportedBank(code="102", name="UniCredit", country="Italy"),
    SupportedBank(code="201", name="Mitsubishi UFJ", country="Japan"),
    SupportedBank(code="301", name="Standard Bank", country="South Africa"),
]

# bank code -> {account number: holder name}
_DIRECTORY: dict[str, dict[str, str]] = {
    "001": {
        "1234567890": "John Smith",
        "2345678901": "Sarah Johnson",
        "3456789012": "Michael Brown",
    },
    "002": {
        "4567890123": "Emily Davis",
        "5678901234": "David Wilson",
        "6789012345": "Lisa Anderson",
    },
    "003": {
        "7890123456": "Robert Taylor",
        "8901234567": "Jennifer Martinez",
        "9012345678": "Christopher Lee",
    },
    "004": {
        "0123456789": "Amanda White",
        "1357924680": "James Garcia",
        "2468013579": "Michelle Rodriguez",
    },
    "101": {"1111222233": "Hans Mueller", "2222333344": "Marie Dubois"},
    "102": {"3333444455": "Giovanni Rossi", "4444555566": "Carlos Silva"},
    "201": {"5555666677": "Hiroshi Tanaka", "6666777788": "Li Wei"},
    "301": {"7777888899": "Kwame Asante", "8888999900": "Fatima Al-Rashid"},
}

_FAILURE_REASONS = [
    "Insufficient funds in correspondent account",
    "Temporary network connectivity issue",
    "Destination bank maintenance window",
    "Transfer limit exceeded for today",
]


class SimulatedSettlementGateway:
    """
    In-process stand-in for a settlement network.

    Outcomes default to the behaviour of a healthy network: 95% of
    submissions settle immediately and the rest fail, while a later status
    poll of an unsettled transfer completes 85% of the time, stays
    processing 10% and fails 5%. Pass `outcome` / `poll_outcome` (functions
    returning a SettlementStatus) or a seeded `rng` to make it deterministic.
    """

    def __init__(
        self,
        outcome: Callable[[SettlementRequest], SettlementStatus] | None = None,
        poll_outcome: Callable[[str], SettlementStatus] | None = None,
        rng: random.Random | None = None,
    ):
        self._rng = rng or random.Random()
        self._outcome = outcome or self._random_outcome
        self._poll_outcome = poll_outcome or self._random_poll_outcome
        self._directory = {code: dict(accounts) for code, accounts in _DIRECTORY.items()}
        self._transfers: dict[str, GatewayResult] = {}

    def _random_outcome(self, request: SettlementRequest) -> SettlementStatus:
        if self._rng.random() > 0.05:
            return SettlementStatus.COMPLETED
        return SettlementStatus.FAILED

    def _random_poll_outcome(self, reference: str) -> SettlementStatus:
        roll = self._rng.random() * 100
        if roll <= 85:
            return SettlementStatus.COMPLETED
        if roll <= 95:
            return SettlementStatus.PROCESSING
        return SettlementStatus.FAILED

    def _bank_name(self, bank_code: str) -> str:
        for bank in SUPPORTED_BANKS:
            if bank.code == bank_code:
                return bank.name
        return "Unknown Bank"

    def add_test_account(self, bank_code: str, account_number: str, account_name: str) -> None:
        self._directory.setdefault(bank_code, {})[account_number] = account_name

    async def verify_destination(
        self, account_number: str, bank_code: str
    ) -> DestinationInfo | None:
        account_name = self._directory.get(bank_code, {}).get(account_number)
        if account_name is None:
            return None
        return DestinationInfo(
            account_number=account_number,
            bank_code=bank_code,
            account_name=account_name,
            bank_name=self._bank_name(bank_code),
        )

    async def initiate(self, request: SettlementRequest) -> GatewayResult:
        destination = await self.verify_destination(
            request.destination_account_number, request.destination_bank_code
        )
        if destination is None:
            result = GatewayResult(
                status=SettlementStatus.FAILED,
                message="Destination account verification failed",
            )
        else:
            status = self._outcome(request)
            result = GatewayResult(
                status=status,
                external_reference=f"EXT{uuid.uuid4().hex[:16].upper()}",
                message=(
                    self._rng.choice(_FAILURE_REASONS)
                    if status == SettlementStatus.FAILED
                    else f"Transfer to {destination.account_name} at {destination.bank_name}"
                ),
            )
        self._transfers[request.reference] = result
        return result

    async def poll_status(self, reference: str) -> GatewayResult:
        known = self._transfers.get(reference)
        if known is None:
            return GatewayResult(status=SettlementStatus.FAILED, message="Unknown transfer")
        if known.is_final:
            return known

        result = GatewayResult(
            status=self._poll_outcome(reference),
            external_reference=known.external_reference,
        )
        self._transfers[reference] = result
        return result

    async def supported_banks(self) -> list[SupportedBank]:
        return list(SUPPORTED_BANKS)
