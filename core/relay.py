"""
Liquidation Sentinel Core: Transaction Relay

Broadcast path for signed liquidation transactions:

1. Private relay (``eth_sendRawTransaction`` POSTed with an Authorization
   header) keeps the transaction out of the public mempool.
2. Public RPC broadcast, used when the relay fails or is disabled, and only
   if ``fallback_to_public`` allows it.

Confirmation waits are bounded; a timeout is reported separately from a
revert because the transaction may still land.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from core.chain import TRANSIENT_ERRORS, ChainContext
from core.exceptions import (
    ConfirmationTimeout,
    ExecutionFailed,
    RelayError,
    TransactionReverted,
)

logger = logging.getLogger(__name__)

# Anything the receipt poll can raise once the transaction is already out.
POLL_ERRORS = (Web3Exception, ValueError) + TRANSIENT_ERRORS


@dataclass
class SubmissionResult:
    tx_hash: str
    channel: str  # "private" | "public"
    is_private: bool


class TransactionRelay:
    def __init__(self, chain: ChainContext, config, auth_token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None, poll_interval_seconds: float = 1.0):
        self.chain = chain
        self.config = config
        self.auth_token = auth_token
        self.poll_interval_seconds = poll_interval_seconds
        self._session = session
        self._owns_session = session is None
        if config.enabled:
            logger.info(
                "Private relay enabled (%s..., fallback_to_public=%s)",
                (config.endpoint or "")[:30],
                config.fallback_to_public,
            )

    @property
    def private_enabled(self) -> bool:
        return bool(self.config.enabled and self.config.endpoint)

    async def submit(self, raw_tx: bytes) -> SubmissionResult:
        """
        Broadcast a signed transaction.

        Raises:
            RelayError: relay rejected/unreachable and public fallback not allowed
            ExecutionFailed: public broadcast rejected by the node
        """
        if self.private_enabled:
            try:
                tx_hash = await self._send_private(raw_tx)
                logger.info(f"Private transaction sent: {tx_hash}")
                return SubmissionResult(tx_hash=tx_hash, channel="private", is_private=True)
            except RelayError as e:
                if not self.config.fallback_to_public:
                    logger.error(f"Private relay failed and public fallback is disabled: {e}")
                    raise
                logger.warning(f"Private relay failed, falling back to public RPC: {e}")
        elif not self.config.fallback_to_public:
            raise RelayError("Private relay disabled and public fallback not allowed")

        tx_hash = await self._send_public(raw_tx)
        logger.info(f"Public transaction sent: {tx_hash}")
        return SubmissionResult(tx_hash=tx_hash, channel="public", is_private=False)

    async def _send_private(self, raw_tx: bytes) -> str:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = self.auth_token
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_sendRawTransaction",
            "params": [Web3.to_hex(raw_tx)],
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        try:
            async with self._session.post(self.config.endpoint, json=body, headers=headers,
                                          timeout=timeout) as response:
                if response.status >= 400:
                    raise RelayError(f"relay HTTP {response.status}")
                data: Dict[str, Any] = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RelayError(f"relay unreachable: {e}") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RelayError(f"relay rejected transaction: {message}")
        tx_hash = data.get("result")
        if not tx_hash:
            raise RelayError("relay returned no transaction hash")
        return tx_hash

    async def _send_public(self, raw_tx: bytes) -> str:
        try:
            tx_hash = await asyncio.wait_for(
                self.chain.web3.eth.send_raw_transaction(raw_tx),
                timeout=self.chain.rpc_timeout_seconds,
            )
        except TRANSIENT_ERRORS as e:
            raise RelayError(f"public broadcast failed: {e}") from e
        except (Web3Exception, ValueError) as e:
            raise ExecutionFailed(f"public broadcast rejected: {e}") from e
        return Web3.to_hex(tx_hash)

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout_seconds: float = 120.0):
        """
        Wait for the receipt, then for ``confirmations`` blocks on top of it.

        Returns:
            The transaction receipt (status == 1)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        try:
            receipt = await self.chain.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout_seconds, poll_latency=self.poll_interval_seconds
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(f"no receipt after {timeout_seconds:.0f}s", tx_hash) from e
        except POLL_ERRORS as e:
            raise ConfirmationTimeout(f"receipt polling failed: {e}", tx_hash) from e

        if receipt is None:
            raise ConfirmationTimeout("receipt not found", tx_hash)
        if int(receipt["status"]) != 1:
            raise TransactionReverted(f"transaction reverted in block {receipt['blockNumber']}", tx_hash)

        included_at = int(receipt["blockNumber"])
        while confirmations > 1:
            try:
                head = int(await self.chain.web3.eth.block_number)
            except POLL_ERRORS as e:
                logger.debug(f"block_number failed while confirming {tx_hash}: {e}")
                head = included_at
            if head - included_at + 1 >= confirmations:
                break
            if loop.time() >= deadline:
                raise ConfirmationTimeout(
                    f"only {head - included_at + 1}/{confirmations} confirmations after {timeout_seconds:.0f}s",
                    tx_hash,
                )
            await asyncio.sleep(self.poll_interval_seconds)

        return receipt

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


__all__ = ["TransactionRelay", "SubmissionResult"]
