"""Ledger client backed by an HTTP signing gateway."""

import asyncio
import time
from typing import Any

import httpx

from ...models import Chain, LedgerSide, TransactionReceipt, TransactionRequest
from ...utils import normalize_address
from ..exceptions import (
    NonceTooLowError,
    ReceiptTimeoutError,
    TransactionRejectedError,
    TransientLedgerError,
)
from ..settings import RECEIPT_POLL_INTERVAL, RPC_TIMEOUT
from .base import LedgerClient


class GatewayLedgerClient(LedgerClient):
    """Talks to a gateway that holds the operating wallet's key.

    The gateway exposes balances, ledger fields and signing endpoints for the
    legacy ledger (primary chain) and the new ledger (primary side plus its
    secondary-chain contract).
    """

    def __init__(
        self,
        base_url: str,
        legacy_ledger: str,
        new_ledger: str | None,
        signer_address: str,
        *,
        timeout: float = RPC_TIMEOUT,
        poll_interval: float = RECEIPT_POLL_INTERVAL,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self.legacy_ledger = normalize_address(legacy_ledger)
        # None until deploy_ledger() when the new ledger is created by this run
        self.new_ledger = normalize_address(new_ledger) if new_ledger else None
        self._signer = normalize_address(signer_address)
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    @property
    def signer_address(self) -> str:
        return self._signer

    async def _request(self, method: str, path: str, allow_missing: bool = False, **kwargs) -> Any:
        """Issue a gateway request and map failures onto the error taxonomy."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientLedgerError(f"Gateway timeout on {method} {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransientLedgerError(f"Gateway unreachable on {method} {path}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientLedgerError(
                f"Gateway error {response.status_code} on {method} {path}: {response.text}"
            )
        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code >= 400:
            self._raise_client_error(response, method, path)
        return response.json() if response.content else None

    def _raise_client_error(self, response: httpx.Response, method: str, path: str) -> None:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        code = str(payload.get("error", "")).lower()
        message = payload.get("message") or response.text or code
        tx_hash = payload.get("tx_hash")

        if code == "nonce_too_low":
            raise NonceTooLowError(f"Nonce rejected as stale: {message}")
        if code in ("rejected", "reverted") or response.status_code == 422:
            raise TransactionRejectedError(f"Rejected by chain: {message}", tx_hash=tx_hash)
        raise TransientLedgerError(
            f"Gateway returned {response.status_code} on {method} {path}: {message}"
        )

    async def get_balance(self, identity: str, chain: Chain) -> int:
        data = await self._request("GET", f"/chains/{chain.value}/balances/{identity}")
        return int(data["balance"])

    async def get_withdrawn(self, account: str) -> int:
        data = await self._request(
            "GET", f"/ledgers/{self.legacy_ledger}/withdrawn/{normalize_address(account)}"
        )
        return int(data["withdrawn"])

    async def get_migrated(self, account: str) -> int:
        data = await self._member_info(account)
        if not data or data.get("status") in (None, "none", "unknown"):
            return 0
        return int(data.get("earnings", 0))

    async def get_total_migrated(self) -> int:
        data = await self._request("GET", f"/ledgers/{self.new_ledger}/stats")
        return int(data["totalEarnings"])

    async def is_active_member(self, account: str) -> bool:
        data = await self._member_info(account)
        return bool(data) and data.get("status") == "active"

    async def _member_info(self, account: str) -> dict[str, Any] | None:
        # Unknown members are reported as 404
        return await self._request(
            "GET",
            f"/ledgers/{self.new_ledger}/members/{normalize_address(account)}",
            allow_missing=True,
        )

    async def get_allowance(self) -> int:
        data = await self._request(
            "GET",
            f"/chains/{Chain.SECONDARY.value}/allowances/{self._signer}",
            params={"spender": self.new_ledger},
        )
        return int(data["allowance"])

    async def get_nonce(self, identity: str) -> int:
        data = await self._request(
            "GET", f"/chains/{Chain.SECONDARY.value}/nonces/{identity}", params={"block": "pending"}
        )
        return int(data["nonce"])

    async def broadcast(self, request: TransactionRequest, nonce: int) -> str:
        body = {
            "ledger": self.new_ledger,
            "kind": request.kind.value,
            "recipients": request.recipients,
            # Amounts exceed JSON's safe integer range
            "amount": str(request.amount),
            "nonce": nonce,
        }
        data = await self._request("POST", f"/chains/{Chain.SECONDARY.value}/transactions", json=body)
        self.logger.debug("Broadcast transaction", kind=request.kind.value, nonce=nonce, tx_hash=data["tx_hash"])
        return data["tx_hash"]

    async def find_transaction(self, nonce: int) -> str | None:
        # Mempool included; 404 when nothing was seen at that nonce
        data = await self._request(
            "GET",
            f"/chains/{Chain.SECONDARY.value}/transactions",
            allow_missing=True,
            params={"sender": self._signer, "nonce": nonce},
        )
        return data.get("tx_hash") if data else None

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        deadline = time.monotonic() + timeout
        while True:
            data = await self._request("GET", f"/transactions/{tx_hash}/receipt")
            if data and data.get("status") is not None:
                receipt = TransactionReceipt(
                    tx_hash=tx_hash,
                    success=data["status"] in (1, "1", "success", True),
                    block_number=data.get("blockNumber"),
                    reason=data.get("reason"),
                )
                if not receipt.success:
                    raise TransactionRejectedError(
                        f"Transaction {tx_hash} reverted: {receipt.reason or 'no reason given'}",
                        tx_hash=tx_hash,
                    )
                return receipt
            if time.monotonic() >= deadline:
                raise ReceiptTimeoutError(
                    f"No receipt for {tx_hash} after {timeout} seconds", tx_hash=tx_hash
                )
            await asyncio.sleep(self.poll_interval)

    async def approve_and_relay(self, amount: int) -> TransactionReceipt:
        data = await self._request(
            "POST",
            "/bridge/relay",
            json={"ledger": self.new_ledger, "amount": str(amount)},
        )
        return TransactionReceipt(
            tx_hash=data["tx_hash"],
            success=True,
            block_number=data.get("blockNumber"),
        )

    async def get_code(self, address: str, chain: Chain) -> bytes:
        data = await self._request("GET", f"/chains/{chain.value}/code/{normalize_address(address)}")
        code = data.get("code") or "0x"
        return bytes.fromhex(code[2:] if code.startswith("0x") else code)

    async def get_token(self, ledger: LedgerSide) -> str:
        address = self.legacy_ledger if ledger is LedgerSide.LEGACY else self.new_ledger
        data = await self._request("GET", f"/ledgers/{address}/token")
        return normalize_address(data["token"])

    async def deploy_ledger(self, factory: str) -> str:
        data = await self._request(
            "POST",
            f"/factories/{normalize_address(factory)}/ledgers",
            json={"owner": self._signer},
        )
        self.new_ledger = normalize_address(data["address"])
        self.logger.info(
            "Deployed new ledger",
            factory=factory,
            new_ledger=self.new_ledger,
            tx_hash=data.get("tx_hash"),
        )
        return self.new_ledger

    async def aclose(self) -> None:
        await self._client.aclose()
