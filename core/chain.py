"""
Liquidation Sentinel Core: Chain Context

Explicit bundle of RPC client, signer and chain settings handed to every
component constructor (no module-level provider/wallet globals).

Every RPC await goes through ``ChainContext.read`` which applies an explicit
timeout and maps transport failures to TransientRpcError so they can be told
apart from definitive on-chain reverts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from core.exceptions import TransientRpcError
from infra.retry import RetryPolicy, retry_async
from protocols.abis import ERC20_ABI, MULTICALL3_ABI

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

# Transport-level failures worth retrying. Contract reverts are not in here.
TRANSIENT_ERRORS: Tuple[type, ...] = (
    asyncio.TimeoutError,
    aiohttp.ClientError,
    ConnectionError,
)


@dataclass
class ChainContext:
    web3: AsyncWeb3
    chain_id: int
    account: Optional[LocalAccount] = None
    rpc_timeout_seconds: float = 10.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    multicall_address: str = "0xcA11bde05977b3631167028862bE2a173976CA11"

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        chain_id: int,
        private_key: Optional[str] = None,
        rpc_timeout_seconds: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        multicall_address: Optional[str] = None,
    ) -> "ChainContext":
        provider = AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": rpc_timeout_seconds})
        account = Account.from_key(private_key) if private_key else None
        ctx = cls(
            web3=AsyncWeb3(provider),
            chain_id=chain_id,
            account=account,
            rpc_timeout_seconds=rpc_timeout_seconds,
            retry_policy=retry_policy or RetryPolicy(),
        )
        if multicall_address:
            ctx.multicall_address = Web3.to_checksum_address(multicall_address)
        return ctx

    @property
    def address(self) -> str:
        if self.account is None:
            raise RuntimeError("No signing account configured")
        return self.account.address

    def contract(self, address: str, abi: List[dict]):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def read(self, factory: Callable[[], Awaitable[Any]], label: str, retry: bool = True) -> Any:
        """
        Await one RPC call with a timeout, retrying transient failures.

        Args:
            factory: zero-arg callable returning a fresh awaitable per attempt
            label: used in logs and error messages
            retry: False for single-shot calls (e.g. broadcasts)
        """
        async def attempt():
            try:
                return await asyncio.wait_for(factory(), timeout=self.rpc_timeout_seconds)
            except TRANSIENT_ERRORS as exc:
                raise TransientRpcError(label, exc) from exc

        if not retry:
            return await attempt()
        return await retry_async(attempt, self.retry_policy, label=label)

    async def gas_price_wei(self) -> int:
        return int(await self.read(lambda: self.web3.eth.gas_price, "eth_gasPrice"))

    async def block_number(self) -> int:
        return int(await self.read(lambda: self.web3.eth.block_number, "eth_blockNumber"))

    async def native_balance(self, owner: str) -> int:
        owner = Web3.to_checksum_address(owner)
        return int(await self.read(lambda: self.web3.eth.get_balance(owner), "eth_getBalance"))

    async def token_balance(self, token: str, owner: str) -> int:
        erc20 = self.contract(token, ERC20_ABI)
        owner = Web3.to_checksum_address(owner)
        return int(await self.read(lambda: erc20.functions.balanceOf(owner).call(), f"balanceOf({token})"))

    async def balance_of(self, asset: str, owner: str, is_native: bool = False) -> int:
        if is_native or asset.lower() == NATIVE_TOKEN.lower():
            return await self.native_balance(owner)
        return await self.token_balance(asset, owner)

    async def pending_nonce(self) -> int:
        address = self.address
        return int(await self.read(
            lambda: self.web3.eth.get_transaction_count(address, "pending"), "eth_getTransactionCount"
        ))

    async def estimate_gas(self, tx: dict) -> int:
        return int(await self.read(lambda: self.web3.eth.estimate_gas(tx), "eth_estimateGas", retry=False))

    def sign(self, tx: dict) -> bytes:
        if self.account is None:
            raise RuntimeError("No signing account configured")
        return bytes(self.account.sign_transaction(tx).raw_transaction)

    async def multicall(self, calls: Sequence[Tuple[str, bytes]]) -> List[Tuple[bool, bytes]]:
        """Batch independent view calls into one aggregate3 round trip (failures allowed)."""
        if not calls:
            return []
        multicall = self.contract(self.multicall_address, MULTICALL3_ABI)
        payload = [(Web3.to_checksum_address(target), True, data) for target, data in calls]
        results = await self.read(
            lambda: multicall.functions.aggregate3(payload).call(), f"multicall({len(calls)})"
        )
        return [(bool(success), bytes(data)) for success, data in results]

    async def close(self) -> None:
        disconnect = getattr(self.web3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


__all__ = ["ChainContext", "NATIVE_TOKEN", "TRANSIENT_ERRORS"]
