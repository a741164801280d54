"""Anchor client for daily digests.

The consolidation job depends only on the ``AnchorClient`` protocol:
``submit(vehicle_id, batch_date, digest)`` returns a receipt whose
``reference`` identifies the ledger entry, or raises ``AnchorError``.
Submission is assumed retry-safe but not exactly-once; the job's own
"already anchored" check provides idempotency.

``PolygonAnchorClient`` writes the digest as calldata of a zero-value
self-transaction on Polygon and returns the transaction hash.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Protocol

from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from odometer_guard.exceptions import AnchorError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120
DEFAULT_REQUEST_TIMEOUT = 30
ANCHOR_PAYLOAD_PREFIX = b"odometer-guard:v1:"


@dataclass(frozen=True)
class AnchorReceipt:
    """Confirmation returned by the ledger."""

    reference: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    block_number: int | None = None


class AnchorClient(Protocol):
    async def submit(self, vehicle_id: str, batch_date: date, digest: str) -> AnchorReceipt: ...


def anchor_payload(vehicle_id: str, batch_date: date, digest: str) -> bytes:
    """Calldata carried by an anchor transaction."""
    if len(digest) != 64:
        raise ValueError("digest must be a 32-byte hex string")
    return ANCHOR_PAYLOAD_PREFIX + f"{vehicle_id}:{batch_date.isoformat()}:".encode() + bytes.fromhex(digest)


class PolygonAnchorClient:
    """Submits digests as self-transactions signed by a dedicated account.

    Nonce allocation and signing are serialized with a lock so concurrent
    submissions from the job's fan-out do not race on the account nonce.
    Waiting for the receipt happens outside the lock.

    Example:
        ```python
        client = PolygonAnchorClient("https://polygon-rpc.com", private_key="0x...")
        receipt = await client.submit("veh-1", date(2026, 10, 18), digest)
        print(receipt.reference)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        private_key: str,
        chain_id: int | None = None,
        receipt_timeout_seconds: int = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        w3: AsyncWeb3[Any] | None = None,
    ) -> None:
        """Initialize the anchor client.

        Args:
            rpc_url: Polygon RPC endpoint URL.
            private_key: Hex private key of the anchoring account.
            chain_id: Chain ID; fetched from the node when None.
            receipt_timeout_seconds: How long to wait for a receipt.
            request_timeout: HTTP timeout for individual RPC calls.
            w3: Pre-built web3 instance (tests).
        """
        self._rpc_url = rpc_url
        self._w3 = w3 or self._new_web3_client(rpc_url, request_timeout)
        self._account = self._w3.eth.account.from_key(private_key)
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout_seconds
        self._nonce_lock = asyncio.Lock()

    @staticmethod
    def _new_web3_client(rpc_url: str, request_timeout: int) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    @property
    def address(self) -> str:
        return str(self._account.address)

    async def submit(self, vehicle_id: str, batch_date: date, digest: str) -> AnchorReceipt:
        try:
            payload = anchor_payload(vehicle_id, batch_date, digest)
        except ValueError as e:
            raise AnchorError(str(e), vehicle_id=vehicle_id, batch_date=batch_date) from e

        try:
            tx_hash = await self._send(payload)
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except (Web3Exception, ValueError, OSError, TimeoutError) as e:
            raise AnchorError(
                f"Anchor transaction failed for {vehicle_id}/{batch_date}: {e}",
                vehicle_id=vehicle_id,
                batch_date=batch_date,
            ) from e

        reference = "0x" + bytes(tx_hash).hex()
        if receipt["status"] != 1:
            raise AnchorError(
                f"Anchor transaction {reference} reverted",
                vehicle_id=vehicle_id,
                batch_date=batch_date,
            )

        logger.info(
            "Anchored %s/%s digest=%s tx=%s block=%s",
            vehicle_id,
            batch_date,
            digest[:12],
            reference,
            receipt["blockNumber"],
        )
        return AnchorReceipt(reference=reference, block_number=int(receipt["blockNumber"]))

    async def _send(self, payload: bytes) -> Any:
        async with self._nonce_lock:
            if self._chain_id is None:
                self._chain_id = int(await self._w3.eth.chain_id)
            address = self._account.address
            nonce = await self._w3.eth.get_transaction_count(address, "pending")
            tx: dict[str, Any] = {
                "from": address,
                "to": address,
                "value": 0,
                "data": payload,
                "nonce": nonce,
                "chainId": self._chain_id,
                "gasPrice": await self._w3.eth.gas_price,
            }
            tx["gas"] = await self._w3.eth.estimate_gas(tx)
            signed = self._account.sign_transaction(tx)
            return await self._w3.eth.send_raw_transaction(signed.raw_transaction)
