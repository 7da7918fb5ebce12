"""
Tests for concurrent money movement through the API.

Requests are fired with asyncio.gather against the same app, so their
atomic units genuinely interleave. These tests verify:
  - Concurrent withdrawals and transfers can never overdraw an account
  - Opposite-direction transfers between the same pair don't deadlock
  - Fan-in and fan-out transfers conserve the total exactly
  - Concurrent external earmarks never spend the same funds twice
"""

import asyncio
import uuid

from app.clients.settlement import SettlementStatus


def transfer(client, source, dest, amount_cents):
    return client.post(
        "/transfers",
        json={
            "from_account_id": source["id"],
            "to_account_id": dest["id"],
            "amount_cents": amount_cents,
        },
        headers={"Idempotency-Key": str(uuid.uuid4())},
    )


async def balance_of(client, account):
    response = await client.get(f"/accounts/{account['id']}/balance")
    return response.json()


class TestNoOverdraw:
    """Concurrent debits against one account."""

    async def test_concurrent_transfers_cannot_overdraw(
        self, authenticated_client, open_account
    ):
        """10 transfers of 2000 from 10000: exactly 5 succeed."""
        source = await open_account(authenticated_client, 10000)
        dest = await open_account(authenticated_client)

        responses = await asyncio.gather(*[
            transfer(authenticated_client, source, dest, 2000) for _ in range(10)
        ])

        codes = [r.status_code for r in responses]
        assert codes.count(201) == 5
        assert codes.count(422) == 5
        assert all(
            r.json()["error_type"] == "insufficient_funds" for r in responses if r.status_code == 422
        )

        source_balance = await balance_of(authenticated_client, source)
        dest_balance = await balance_of(authenticated_client, dest)
        assert source_balance["balance_cents"] == 0
        assert dest_balance["balance_cents"] == 10000
        assert source_balance["match"] is True
        assert dest_balance["match"] is True

    async def test_concurrent_withdrawals_cannot_overdraw(
        self, authenticated_client, open_account
    ):
        account = await open_account(authenticated_client, 3000)

        responses = await asyncio.gather(*[
            authenticated_client.post(
                f"/accounts/{account['id']}/transactions",
                json={"type": "withdrawal", "amount_cents": 1000},
            )
            for _ in range(6)
        ])

        assert sorted(r.status_code for r in responses) == [201] * 3 + [422] * 3
        balance = await balance_of(authenticated_client, account)
        assert balance["balance_cents"] == 0
        assert balance["match"] is True

    async def test_mixed_internal_and_external_debits(
        self, authenticated_client, open_account, gateway
    ):
        """External earmarks and internal transfers compete for one balance."""
        gateway.initiate_status = SettlementStatus.PROCESSING
        source = await open_account(authenticated_client, 20000)
        dest = await open_account(authenticated_client)

        external = [
            authenticated_client.post(
                "/transfers",
                json={
                    "from_account_id": source["id"],
                    "to_account_number": "1234567890",
                    "to_bank_code": "001",
                    "amount_cents": 4500,
                },
                headers={"Idempotency-Key": str(uuid.uuid4())},
            )
            for _ in range(3)
        ]
        internal = [transfer(authenticated_client, source, dest, 5000) for _ in range(3)]
        responses = await asyncio.gather(*external, *internal)

        balance = await balance_of(authenticated_client, source)
        assert balance["available_balance_cents"] >= 0
        assert balance["balance_cents"] >= balance["available_balance_cents"]
        assert balance["match"] is True

        # Everything that was accepted fits in the original 20000
        spent = 0
        for response in responses:
            if response.status_code in (201, 202):
                data = response.json()["data"]
                spent += data["amount_cents"] + data["fee_cents"]
        assert spent <= 20000
        assert balance["available_balance_cents"] == 20000 - spent


class TestNoDeadlock:
    """Transfers that lock the same accounts in different orders."""

    async def test_opposite_direction_transfers(self, authenticated_client, open_account):
        a = await open_account(authenticated_client, 10000)
        b = await open_account(authenticated_client, 10000)

        requests = []
        for _ in range(10):
            requests.append(transfer(authenticated_client, a, b, 100))
            requests.append(transfer(authenticated_client, b, a, 100))
        responses = await asyncio.wait_for(asyncio.gather(*requests), timeout=30)

        assert all(r.status_code == 201 for r in responses)
        assert (await balance_of(authenticated_client, a))["balance_cents"] == 10000
        assert (await balance_of(authenticated_client, b))["balance_cents"] == 10000

    async def test_ring_of_transfers(self, authenticated_client, open_account):
        """A->B, B->C, C->A at the same time."""
        accounts = [await open_account(authenticated_client, 5000) for _ in range(3)]

        requests = []
        for _ in range(5):
            for i, source in enumerate(accounts):
                requests.append(
                    transfer(authenticated_client, source, accounts[(i + 1) % 3], 250)
                )
        responses = await asyncio.wait_for(asyncio.gather(*requests), timeout=30)

        assert all(r.status_code == 201 for r in responses)
        for account in accounts:
            assert (await balance_of(authenticated_client, account))["balance_cents"] == 5000


class TestConservation:
    """Fan-out and fan-in under concurrency."""

    async def test_fan_in(self, authenticated_client, open_account):
        sink = await open_account(authenticated_client)
        sources = [await open_account(authenticated_client, 1000) for _ in range(8)]

        responses = await asyncio.gather(*[
            transfer(authenticated_client, source, sink, 1000) for source in sources
        ])

        assert all(r.status_code == 201 for r in responses)
        assert (await balance_of(authenticated_client, sink))["balance_cents"] == 8000

    async def test_fan_out(self, authenticated_client, open_account):
        hub = await open_account(authenticated_client, 8000)
        targets = [await open_account(authenticated_client) for _ in range(8)]

        responses = await asyncio.gather(*[
            transfer(authenticated_client, hub, target, 1000) for target in targets
        ])

        assert all(r.status_code == 201 for r in responses)
        assert (await balance_of(authenticated_client, hub))["balance_cents"] == 0
        total = 0
        for target in targets:
            total += (await balance_of(authenticated_client, target))["balance_cents"]
        assert total == 8000
