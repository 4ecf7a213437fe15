from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator

import httpx
from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import DataSliceOpts
from solana.rpc.websocket_api import connect as ws_connect
from solders.errors import SerdeJSONError
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.rpc.responses import LogsNotification
from solders.signature import Signature
from websockets.exceptions import WebSocketException

from pool_watch_engine.chains.gateway import LogNotification
from pool_watch_engine.config import AppSettings
from pool_watch_engine.errors import TransportError

_TRANSPORT_ERRORS = (SolanaRpcException, RPCException, httpx.HTTPError, WebSocketException, OSError)
# Raised by solders/json when the node sends something we cannot decode
_DECODE_ERRORS = (SerdeJSONError, ValueError, TypeError, KeyError, AttributeError)


@contextmanager
def _translated(operation: str) -> Iterator[None]:
    """Re-raise network and response-decoding failures as ``TransportError``."""
    try:
        yield
    except TransportError:
        raise
    except _TRANSPORT_ERRORS as e:
        raise TransportError(str(e) or type(e).__name__, operation=operation) from e
    except _DECODE_ERRORS as e:
        raise TransportError(
            f"malformed response: {type(e).__name__}: {e}", operation=operation
        ) from e


@dataclass
class SolanaGateway:
    client: AsyncClient
    ws_url: str
    commitment: Commitment

    @classmethod
    def create(cls, settings: AppSettings) -> SolanaGateway:
        commitment = Commitment(settings.commitment)
        client = AsyncClient(settings.sol_rpc_url, commitment=commitment)
        return cls(client=client, ws_url=settings.sol_ws_url, commitment=commitment)

    async def snapshot(self, program_id: str, data_size: int) -> set[str]:
        with _translated("snapshot"):
            resp = await self.client.get_program_accounts(
                Pubkey.from_string(program_id),
                commitment=self.commitment,
                encoding="base64",
                data_slice=DataSliceOpts(offset=0, length=0),
                filters=[data_size],
            )
            return {str(acc.pubkey) for acc in resp.value}

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        with _translated("get_transaction"):
            resp = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=self.commitment,
                max_supported_transaction_version=0,
            )
            if resp.value is None:
                return None
            return json.loads(resp.value.to_json())

    async def get_account_data(self, address: str) -> bytes | None:
        with _translated("get_account_data"):
            resp = await self.client.get_account_info(
                Pubkey.from_string(address), commitment=self.commitment, encoding="base64"
            )
            if resp.value is None:
                return None
            return bytes(resp.value.data)

    async def get_token_balance(self, address: str) -> dict[str, Any] | None:
        with _translated("get_token_balance"):
            resp = await self.client.get_token_account_balance(
                Pubkey.from_string(address), commitment=self.commitment
            )
            v = resp.value
            if v is None:
                return None
            # Same shape as uiTokenAmount in transaction metadata
            return {
                "amount": v.amount,
                "decimals": v.decimals,
                "uiAmount": v.ui_amount,
                "uiAmountString": v.ui_amount_string,
            }

    async def get_signatures(self, address: str, limit: int) -> list[str]:
        with _translated("get_signatures"):
            resp = await self.client.get_signatures_for_address(
                Pubkey.from_string(address), limit=limit, commitment=self.commitment
            )
            return [str(s.signature) for s in resp.value or []]

    async def subscribe(self, address: str) -> AsyncIterator[LogNotification]:
        with _translated("subscribe"):
            filt = RpcTransactionLogsFilterMentions(Pubkey.from_string(address))
            async with ws_connect(self.ws_url) as websocket:
                await websocket.logs_subscribe(filter_=filt, commitment=self.commitment)
                first = await websocket.recv()
                logger.info("Solana logs subscription established for {}: {}", address, first)
                async for messages in websocket:
                    for msg in messages:
                        if not isinstance(msg, LogsNotification):
                            continue
                        value = msg.result.value
                        yield LogNotification(
                            signature=str(value.signature),
                            logs=tuple(value.logs or ()),
                            failed=value.err is not None,
                        )

    async def close(self) -> None:
        await self.client.close()
