"""
HTTP client for the contract validation node.

The node speaks JSON and names outputs as canonical ``txid:vout`` strings.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from rgbwallet.backends.base import ContractInfo, ValidationNode
from rgbwallet.errors import (
    ClaimRejected,
    ContractNotFound,
    NetworkUnavailable,
    ProtocolError,
    RemoteError,
    UtxoNotFound,
)
from rgbwallet.models import IssueAssetRequest, Outpoint, PendingClaim, SealBinding


class HttpValidationNode(ValidationNode):
    def __init__(
        self,
        node_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.node_url = node_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _api_call(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Make an API call to the validation node."""
        url = f"{self.node_url}/{endpoint}"

        try:
            if method == "GET":
                response = await self.client.get(url)
            elif method == "POST":
                response = await self.client.post(url, json=data)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()

        except httpx.TransportError as e:
            logger.error(f"Validation node unreachable: {endpoint} - {e}")
            raise NetworkUnavailable(f"Validation node request failed: {e}", url=url) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            reason = _error_reason(e.response)
            if status >= 500 or status == 429:
                logger.error(f"Validation node unavailable: {endpoint} - {status} {reason}")
                raise NetworkUnavailable(
                    f"Validation node unavailable ({status}): {reason}",
                    url=url,
                    status_code=status,
                ) from e
            logger.debug(f"Validation node refused {endpoint}: {status} {reason}")
            raise RemoteError(
                f"Validation node refused request ({status}): {reason}",
                url=url,
                status_code=status,
                reason=reason,
            ) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError("Validation node returned invalid JSON", url=url) from e

    async def issue_asset(self, request: IssueAssetRequest) -> str:
        result = await self._api_call("POST", "api/contracts/issue", data=request.model_dump())
        contract_id = result["contract_id"]
        logger.info(f"Issued {request.ticker} as contract {contract_id}")
        return contract_id

    async def lookup_seals(self, outpoints: list[Outpoint]) -> dict[Outpoint, list[SealBinding]]:
        if not outpoints:
            return {}

        requested = set(outpoints)
        result = await self._api_call(
            "POST", "api/seals/lookup", data={"outpoints": [str(op) for op in outpoints]}
        )

        seals: dict[Outpoint, list[SealBinding]] = {}
        for entry in result.get("seals", []):
            outpoint = Outpoint.parse(entry["outpoint"])
            if outpoint not in requested:
                raise ProtocolError(
                    "Validation node returned a seal for an outpoint that was not requested",
                    outpoint=str(outpoint),
                    contract_id=entry.get("contract_id"),
                )
            amount = entry.get("amount")
            seals.setdefault(outpoint, []).append(
                SealBinding(
                    contract_id=entry["contract_id"],
                    ticker=entry.get("ticker", ""),
                    amount=int(amount) if amount is not None else None,
                    name=entry.get("name"),
                )
            )

        logger.debug(f"Seal lookup: {len(seals)} of {len(outpoints)} outpoints occupied")
        return seals

    async def submit_claim(self, claim: PendingClaim, signature: str | None = None) -> None:
        payload = {
            "witness_id": claim.witness_id,
            "contract_id": claim.contract_id,
            "recipient_address": claim.recipient_address,
            "expected_vout": claim.expected_vout,
            "consignment": claim.consignment_reference,
            "actual_outpoint": str(claim.actual_outpoint) if claim.actual_outpoint else None,
            "signature": signature,
        }
        try:
            await self._api_call("POST", "api/claims", data=payload)
        except RemoteError as e:
            if e.status_code == 409 and e.reason == "utxo_not_found":
                raise UtxoNotFound(
                    str(claim.actual_outpoint or claim.witness_id),
                    "Witness output not visible to the validation node yet",
                ) from e
            raise ClaimRejected(
                f"Claim rejected ({e.status_code}): {e.reason}",
                witness_id=claim.witness_id,
                contract_id=claim.contract_id,
            ) from e

    async def get_contract(self, contract_id: str) -> ContractInfo:
        try:
            data = await self._api_call("GET", f"api/contracts/{contract_id}")
        except RemoteError as e:
            if e.status_code == 404:
                raise ContractNotFound(contract_id) from e
            raise

        genesis = data.get("genesis_outpoint")
        return ContractInfo(
            contract_id=data["contract_id"],
            ticker=data["ticker"],
            name=data["name"],
            supply=int(data["supply"]),
            precision=int(data.get("precision", 0)),
            genesis_outpoint=Outpoint.parse(genesis) if genesis else None,
        )

    async def export_genesis(self, contract_id: str) -> str:
        try:
            result = await self._api_call("POST", f"api/contracts/{contract_id}/genesis")
        except RemoteError as e:
            if e.status_code == 404:
                raise ContractNotFound(contract_id) from e
            raise

        consignment = result.get("consignment")
        if not consignment:
            raise ProtocolError(
                "Validation node returned no genesis consignment", contract_id=contract_id
            )
        logger.info(f"Exported genesis of {contract_id} to {consignment}")
        return consignment

    async def generate_invoice(
        self,
        contract_id: str,
        amount: int,
        recipient_address: str,
        recipient_pubkey: str | None = None,
    ) -> str:
        payload = {
            "contract_id": contract_id,
            "amount": amount,
            "recipient_address": recipient_address,
            "recipient_pubkey": recipient_pubkey,
        }
        try:
            result = await self._api_call("POST", "api/invoices", data=payload)
        except RemoteError as e:
            if e.status_code == 404:
                raise ContractNotFound(contract_id) from e
            raise

        invoice = result.get("invoice")
        if not invoice:
            raise ProtocolError("Validation node returned no invoice", contract_id=contract_id)
        return invoice

    async def close(self) -> None:
        await self.client.aclose()


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict):
        return str(body.get("error", body))
    return str(body)
