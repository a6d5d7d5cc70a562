"""Tests for the HTTP gateway ledger client."""

import json

import httpx
import pytest

from ledger_migrate.core.exceptions import (
    NonceTooLowError,
    ReceiptTimeoutError,
    TransactionRejectedError,
    TransientLedgerError,
)
from ledger_migrate.core.ledger import GatewayLedgerClient
from ledger_migrate.models import Chain, LedgerSide, TransactionRequest, TxKind
from tests.fakes import LEGACY, NEW, SIGNER, TOKEN, addr


def gateway(handler) -> GatewayLedgerClient:
    client = httpx.AsyncClient(base_url="http://gateway.test", transport=httpx.MockTransport(handler))
    return GatewayLedgerClient(
        "http://gateway.test", LEGACY, NEW, SIGNER, poll_interval=0, client=client
    )


def respond(code: int = 200, **payload):
    return lambda request: httpx.Response(code, json=payload)


class TestGatewayReads:
    """Test read endpoints."""

    @pytest.mark.asyncio
    async def test_balance_parses_decimal_string(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"balance": str(10**25)})

        balance = await gateway(handler).get_balance(SIGNER, Chain.SECONDARY)

        assert balance == 10**25
        assert seen == [f"/chains/secondary/balances/{SIGNER}"]

    @pytest.mark.asyncio
    async def test_withdrawn_reads_legacy_ledger(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"withdrawn": "42"})

        assert await gateway(handler).get_withdrawn(addr(1)) == 42
        assert seen == [f"/ledgers/{LEGACY}/withdrawn/{addr(1)}"]

    @pytest.mark.asyncio
    async def test_unknown_member_has_nothing_migrated(self):
        client = gateway(respond(404, error="not_found"))

        assert await client.get_migrated(addr(1)) == 0
        assert not await client.is_active_member(addr(1))

    @pytest.mark.asyncio
    async def test_member_info(self):
        client = gateway(respond(status="active", earnings="500"))

        assert await client.get_migrated(addr(1)) == 500
        assert await client.is_active_member(addr(1))

    @pytest.mark.asyncio
    async def test_inactive_member_keeps_migrated_amount(self):
        client = gateway(respond(status="inactive", earnings="70"))

        assert await client.get_migrated(addr(1)) == 70
        assert not await client.is_active_member(addr(1))

    @pytest.mark.asyncio
    async def test_nonce_uses_pending_block(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"nonce": 12})

        assert await gateway(handler).get_nonce(SIGNER) == 12
        assert seen == [{"block": "pending"}]

    @pytest.mark.asyncio
    async def test_code_and_token(self):
        def handler(request):
            if "/code/" in request.url.path:
                return httpx.Response(200, json={"code": "0x"})
            return httpx.Response(200, json={"token": TOKEN.upper().replace("0X", "0x")})

        client = gateway(handler)

        assert await client.get_code(addr(9), Chain.PRIMARY) == b""
        assert await client.get_token(LedgerSide.CURRENT) == TOKEN


    @pytest.mark.asyncio
    async def test_allowance_of_operating_wallet_for_new_ledger(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, dict(request.url.params)))
            return httpx.Response(200, json={"allowance": str(10**22)})

        assert await gateway(handler).get_allowance() == 10**22
        assert seen == [(f"/chains/secondary/allowances/{SIGNER}", {"spender": NEW})]


class TestGatewayErrors:
    """Test mapping of gateway failures onto migration errors."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    async def test_server_errors_are_transient(self, status):
        with pytest.raises(TransientLedgerError):
            await gateway(respond(status)).get_total_migrated()

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientLedgerError, match="unreachable"):
            await gateway(handler).get_total_migrated()

    @pytest.mark.asyncio
    async def test_stale_nonce(self):
        client = gateway(respond(400, error="nonce_too_low", message="nonce 3 < 5"))
        request = TransactionRequest(kind=TxKind.TRANSFER, recipients=[addr(1)], amount=1)

        with pytest.raises(NonceTooLowError):
            await client.broadcast(request, 3)

    @pytest.mark.asyncio
    async def test_rejection_carries_tx_hash(self):
        client = gateway(respond(422, error="reverted", message="not eligible", tx_hash="0xdead"))
        request = TransactionRequest(kind=TxKind.TRANSFER, recipients=[addr(1)], amount=1)

        with pytest.raises(TransactionRejectedError) as exc_info:
            await client.broadcast(request, 0)

        assert exc_info.value.tx_hash == "0xdead"

    @pytest.mark.asyncio
    async def test_other_client_errors_are_transient(self):
        with pytest.raises(TransientLedgerError, match="400"):
            await gateway(respond(400, error="bad_request")).get_total_migrated()


class TestGatewayTransactions:
    """Test broadcast and receipt polling."""

    @pytest.mark.asyncio
    async def test_broadcast_sends_amount_as_string(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"tx_hash": "0xabc"})

        request = TransactionRequest(kind=TxKind.TRANSFER, recipients=[addr(1)], amount=10**30)
        tx_hash = await gateway(handler).broadcast(request, 7)

        assert tx_hash == "0xabc"
        assert bodies == [
            {
                "ledger": NEW,
                "kind": "transfer",
                "recipients": [addr(1)],
                "amount": str(10**30),
                "nonce": 7,
            }
        ]

    @pytest.mark.asyncio
    async def test_receipt_polled_until_mined(self):
        replies = iter([{}, {"status": None}, {"status": 1, "blockNumber": 99}])
        client = gateway(lambda request: httpx.Response(200, json=next(replies)))

        receipt = await client.wait_for_receipt("0xabc", timeout=5)

        assert receipt.success
        assert receipt.block_number == 99

    @pytest.mark.asyncio
    async def test_failed_receipt_is_rejection(self):
        client = gateway(respond(status=0, reason="execution reverted"))

        with pytest.raises(TransactionRejectedError, match="execution reverted"):
            await client.wait_for_receipt("0xabc", timeout=5)

    @pytest.mark.asyncio
    async def test_receipt_timeout_keeps_hash(self):
        client = gateway(respond())

        with pytest.raises(ReceiptTimeoutError) as exc_info:
            await client.wait_for_receipt("0xabc", timeout=0)

        assert exc_info.value.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_relay(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"tx_hash": "0xrelay"})

        receipt = await gateway(handler).approve_and_relay(30)

        assert receipt.tx_hash == "0xrelay"
        assert bodies == [{"ledger": NEW, "amount": "30"}]

    @pytest.mark.asyncio
    async def test_find_transaction_by_nonce(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"tx_hash": "0xabc"})

        assert await gateway(handler).find_transaction(4) == "0xabc"
        assert seen == [{"sender": SIGNER, "nonce": "4"}]

    @pytest.mark.asyncio
    async def test_unseen_nonce_has_no_transaction(self):
        client = gateway(respond(404, error="not_found"))

        assert await client.find_transaction(4) is None

    @pytest.mark.asyncio
    async def test_deploy_switches_client_to_new_ledger(self):
        deployed = addr(77)
        posts = []

        def handler(request):
            if request.method == "POST":
                posts.append((request.url.path, json.loads(request.content)))
                return httpx.Response(200, json={"address": deployed.upper().replace("0X", "0x")})
            return httpx.Response(200, json={"totalEarnings": "0"})

        client = GatewayLedgerClient(
            "http://gateway.test",
            LEGACY,
            None,
            SIGNER,
            client=httpx.AsyncClient(base_url="http://gateway.test", transport=httpx.MockTransport(handler)),
        )

        assert await client.deploy_ledger(addr(9)) == deployed
        assert posts == [(f"/factories/{addr(9)}/ledgers", {"owner": SIGNER})]
        assert client.new_ledger == deployed
        assert await client.get_total_migrated() == 0
