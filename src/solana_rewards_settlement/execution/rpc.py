"""Async JSON-RPC gateway: account reads and recent blockhashes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.pubkey import Pubkey

from ..config.settings import RPCConfig, get_app_config
from ..errors import AccountDecodeError, NetworkError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

_TRANSPORT_ERRORS = (
    SolanaRpcException,
    RPCException,
    httpx.HTTPError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """Raw account as returned by ``getAccountInfo``."""

    address: Pubkey
    owner: Pubkey
    lamports: int
    data: bytes


class ChainReader(Protocol):
    """The two RPC calls the transaction composer depends on."""

    async def get_account(
        self, address: Pubkey, *, expected_owner: Optional[Pubkey] = None
    ) -> Optional[AccountSnapshot]:
        ...

    async def get_latest_blockhash(self) -> Hash:
        ...


class RpcGateway:
    """Thin wrapper over :class:`AsyncClient` that never retries on its own.

    Timeouts and transport failures surface as :class:`NetworkError`, which is
    marked retryable so callers can decide on a policy.
    """

    def __init__(
        self,
        config: Optional[RPCConfig] = None,
        *,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self._config = config or get_app_config().rpc
        self._endpoint = str(self._config.primary_url)
        self._commitment = Commitment(self._config.commitment)
        self._client = client or AsyncClient(
            self._endpoint,
            commitment=self._commitment,
            timeout=self._config.request_timeout,
        )
        self._logger = get_logger(__name__)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def get_account(
        self, address: Pubkey, *, expected_owner: Optional[Pubkey] = None
    ) -> Optional[AccountSnapshot]:
        try:
            with METRICS.timed("rpc.latency_ms.getAccountInfo"):
                response = await self._client.get_account_info(
                    address, commitment=self._commitment, encoding="base64"
                )
        except _TRANSPORT_ERRORS as exc:
            METRICS.increment("rpc.errors.getAccountInfo")
            self._logger.warning("getAccountInfo failed for %s on %s: %s", address, self._endpoint, exc)
            raise NetworkError(f"getAccountInfo failed for {address}: {exc}") from exc

        account = response.value
        if account is None:
            return None
        if expected_owner is not None and account.owner != expected_owner:
            raise AccountDecodeError(
                f"Account {address} is owned by {account.owner}, expected {expected_owner}"
            )
        return AccountSnapshot(
            address=address,
            owner=account.owner,
            lamports=account.lamports,
            data=bytes(account.data),
        )

    async def get_latest_blockhash(self) -> Hash:
        try:
            with METRICS.timed("rpc.latency_ms.getLatestBlockhash"):
                response = await self._client.get_latest_blockhash(commitment=self._commitment)
        except _TRANSPORT_ERRORS as exc:
            METRICS.increment("rpc.errors.getLatestBlockhash")
            self._logger.warning("getLatestBlockhash failed on %s: %s", self._endpoint, exc)
            raise NetworkError(f"getLatestBlockhash failed: {exc}") from exc
        return response.value.blockhash

    async def close(self) -> None:
        await self._client.close()


__all__ = ["AccountSnapshot", "ChainReader", "RpcGateway"]
