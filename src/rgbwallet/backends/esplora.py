"""
Esplora REST block-explorer backend.

Endpoints used:
- GET  blocks/tip/height, blocks/tip/hash
- GET  tx/{txid}/status
- GET  address/{address}/utxo
- GET  fee-estimates
- POST tx (raw hex body)
"""

from __future__ import annotations

import httpx
from loguru import logger

from rgbwallet.backends.base import BlockExplorer, ExplorerUtxo, TxStatus
from rgbwallet.errors import NetworkUnavailable, RemoteError
from rgbwallet.txid import canonicalize


class EsploraBackend(BlockExplorer):
    """Block explorer backed by an Esplora (or mempool.space) HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _api_call(
        self, method: str, endpoint: str, content: str | None = None
    ) -> httpx.Response:
        """Make an API call to the Esplora server."""
        url = f"{self.base_url}/{endpoint}"

        try:
            if method == "GET":
                response = await self.client.get(url)
            elif method == "POST":
                response = await self.client.post(
                    url, content=content, headers={"Content-Type": "text/plain"}
                )
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
            return response

        except httpx.TransportError as e:
            logger.error(f"Esplora unreachable: {endpoint} - {e}")
            raise NetworkUnavailable(f"Esplora request failed: {e}", url=url) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            reason = e.response.text.strip()
            if status >= 500 or status == 429:
                logger.error(f"Esplora unavailable: {endpoint} - {status} {reason}")
                raise NetworkUnavailable(
                    f"Esplora unavailable ({status}): {reason}", url=url, status_code=status
                ) from e
            logger.debug(f"Esplora API call failed: {endpoint} - {status} {reason}")
            raise RemoteError(
                f"Esplora refused request ({status}): {reason}",
                url=url,
                status_code=status,
                reason=reason,
            ) from e

    async def get_tip_height(self) -> int:
        response = await self._api_call("GET", "blocks/tip/height")
        return int(response.text.strip())

    async def get_tip_hash(self) -> str:
        response = await self._api_call("GET", "blocks/tip/hash")
        return response.text.strip()

    async def get_tx_status(self, txid: str) -> TxStatus | None:
        txid = canonicalize(txid)
        try:
            response = await self._api_call("GET", f"tx/{txid}/status")
        except RemoteError as e:
            if e.status_code in (400, 404):
                return None
            raise

        data = response.json()
        confirmed = bool(data.get("confirmed", False))
        return TxStatus(
            txid=txid,
            confirmed=confirmed,
            block_height=data.get("block_height") if confirmed else None,
            block_hash=data.get("block_hash") if confirmed else None,
        )

    async def get_address_utxos(self, address: str) -> list[ExplorerUtxo]:
        response = await self._api_call("GET", f"address/{address}/utxo")

        utxos = []
        for entry in response.json():
            status = entry.get("status", {})
            confirmed = bool(status.get("confirmed", False))
            utxos.append(
                ExplorerUtxo(
                    txid=canonicalize(entry["txid"]),
                    vout=int(entry["vout"]),
                    value=int(entry["value"]),
                    confirmed=confirmed,
                    block_height=status.get("block_height") if confirmed else None,
                )
            )
        return utxos

    async def broadcast(self, raw_hex: str) -> str:
        try:
            response = await self._api_call("POST", "tx", content=raw_hex)
        except RemoteError as e:
            logger.error(f"Broadcast rejected: {e.reason}")
            raise
        txid = canonicalize(response.text.strip())
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def get_fee_estimates(self) -> dict[int, float]:
        response = await self._api_call("GET", "fee-estimates")
        return {int(target): float(rate) for target, rate in response.json().items()}

    async def close(self) -> None:
        await self.client.aclose()
