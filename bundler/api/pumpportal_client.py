#!/usr/bin/env python3
"""
PumpPortal trade-local client for pump.fun create, buy and sell.

PumpPortal builds an unsigned transaction for each trade; it is signed
locally with the wallet's keypair and submitted through our own RPC, so
secret keys never leave the process. Token metadata (image and JSON) is
pinned to IPFS through Pinata before a create.

Example Usage:
    venue = PumpPortalClient(ledger=ledger, client=rate_limited_client)
    signature = await venue.buy(mint, wallet, sol_amount=0.1, slippage_bps=2500)
"""

import asyncio
import json
import mimetypes
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from loguru import logger
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from bundler.config import (
    IPFS_GATEWAY_URL,
    PINATA_JWT,
    PINATA_UPLOAD_URL,
    PUMPPORTAL_TIMEOUT,
    PUMPPORTAL_TRADE_URL,
    TRADE_PRIORITY_FEE_SOL,
)
from bundler.errors import InvalidArgumentError, PermanentTradeError, TransientRpcError
from bundler.solana.models import Wallet
from bundler.solana.rpc_client import RateLimitedClient, RetryTally


@dataclass
class TokenMetadata:
    """Token metadata for pump.fun creation."""
    name: str
    symbol: str
    description: str = ""
    twitter: str = ""
    telegram: str = ""
    website: str = ""
    show_name: bool = True
    uri: Optional[str] = None  # already pinned metadata, skips the upload

    def to_json(self, image_url: str) -> Dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "description": self.description,
            "twitter": self.twitter,
            "telegram": self.telegram,
            "website": self.website,
            "image": image_url,
            "showName": self.show_name,
        }


@dataclass
class MediaUpload:
    """Image bytes handed over by the request layer."""
    file_name: str
    content: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_path(cls, path: str) -> "MediaUpload":
        with open(path, "rb") as f:
            content = f.read()
        mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return cls(file_name=os.path.basename(path), content=content, mime_type=mime_type)


def _raise_for_response(response: requests.Response, what: str) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientRpcError(f"{what}: HTTP {response.status_code} {response.text[:200]}")
    if response.status_code >= 400:
        raise PermanentTradeError(f"{what} rejected: HTTP {response.status_code} {response.text[:200]}")


class PumpPortalClient:
    """Trade venue backed by PumpPortal trade-local transactions."""

    def __init__(self, ledger, client: RateLimitedClient,
                 trade_url: str = PUMPPORTAL_TRADE_URL,
                 pinata_jwt: Optional[str] = PINATA_JWT,
                 timeout: int = PUMPPORTAL_TIMEOUT,
                 priority_fee_sol: float = TRADE_PRIORITY_FEE_SOL,
                 session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            ledger: Ledger used to send and confirm signed transactions
            client: Shared rate-limited client
            trade_url: PumpPortal trade-local endpoint
            pinata_jwt: Pinata JWT for metadata uploads
            timeout: HTTP timeout in seconds
            priority_fee_sol: Priority fee passed to PumpPortal per trade
            session: Optional requests session
        """
        self.ledger = ledger
        self.client = client
        self.trade_url = trade_url
        self.pinata_jwt = pinata_jwt
        self.timeout = timeout
        self.priority_fee_sol = priority_fee_sol
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "pump-bundler/0.3"})

    # HTTP helpers (blocking; always run in a worker thread)

    def _post_trade_local(self, payload: Dict[str, Any]) -> bytes:
        what = f"PumpPortal {payload.get('action')}"
        try:
            response = self.session.post(self.trade_url, json=payload, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientRpcError(f"{what}: {e}") from e
        _raise_for_response(response, what)
        if not response.content:
            raise PermanentTradeError(f"{what}: empty transaction returned")
        return response.content

    def _pin_file(self, file_name: str, content: bytes, mime_type: str) -> str:
        if not self.pinata_jwt:
            raise InvalidArgumentError("PINATA_JWT is not configured; cannot upload token metadata")
        try:
            response = self.session.post(
                PINATA_UPLOAD_URL,
                headers={"Authorization": f"Bearer {self.pinata_jwt}"},
                data={"network": "public"},
                files={"file": (file_name, content, mime_type)},
                timeout=self.timeout,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientRpcError(f"Pinata upload: {e}") from e
        _raise_for_response(response, "Pinata upload")
        try:
            cid = response.json()["data"]["cid"]
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentTradeError(f"Pinata upload: unexpected response {response.text[:200]}") from e
        return f"{IPFS_GATEWAY_URL}/{cid}"

    # Async steps

    async def _build(self, payload: Dict[str, Any], label: str, tally: Optional[RetryTally]) -> bytes:
        return await self.client.call(
            lambda: asyncio.to_thread(self._post_trade_local, payload), label=label, tally=tally
        )

    @staticmethod
    def _sign(raw: bytes, signers: List[Keypair]) -> VersionedTransaction:
        try:
            unsigned = VersionedTransaction.from_bytes(raw)
            return VersionedTransaction(unsigned.message, signers)
        except Exception as e:
            raise PermanentTradeError(f"Could not sign venue transaction: {e}") from e

    async def _submit(self, tx: VersionedTransaction, label: str, tally: Optional[RetryTally]) -> str:
        signature = await self.client.call(lambda: self.ledger.send_transaction(tx), label=label, tally=tally)
        await self.client.call(lambda: self.ledger.confirm_transaction(signature), label=label, tally=tally)
        return signature

    def _trade_payload(self, wallet: Wallet, action: str, mint: str, amount: Any,
                       denominated_in_sol: bool, slippage_bps: int) -> Dict[str, Any]:
        return {
            "publicKey": wallet.public_key,
            "action": action,
            "mint": mint,
            "denominatedInSol": "true" if denominated_in_sol else "false",
            "amount": amount,
            "slippage": slippage_bps / 100,
            "priorityFee": self.priority_fee_sol,
            "pool": "pump",
        }

    async def upload_metadata(self, metadata: TokenMetadata, media: Optional[MediaUpload],
                              tally: Optional[RetryTally] = None) -> str:
        """
        Pin the image and the metadata JSON.

        Returns:
            Gateway URL of the metadata JSON
        """
        if metadata.uri:
            return metadata.uri

        image_url = ""
        if media is not None:
            image_url = await self.client.call(
                lambda: asyncio.to_thread(self._pin_file, media.file_name, media.content, media.mime_type),
                label="pinata image", tally=tally,
            )
            logger.info(f"Uploaded token image: {image_url}")

        document = json.dumps(metadata.to_json(image_url)).encode("utf-8")
        uri = await self.client.call(
            lambda: asyncio.to_thread(self._pin_file, "metadata.json", document, "application/json"),
            label="pinata metadata", tally=tally,
        )
        logger.info(f"Uploaded token metadata: {uri}")
        return uri

    async def create_asset(self, creator: Wallet, metadata: TokenMetadata, media: Optional[MediaUpload],
                           dev_buy_sol: float, slippage_bps: int,
                           tally: Optional[RetryTally] = None,
                           mint_keypair: Optional[Keypair] = None) -> Tuple[str, str]:
        """
        Create a pump.fun token, including the creator's initial buy.

        Returns:
            Tuple of (mint address, signature)
        """
        mint_keypair = mint_keypair or Keypair()
        mint = str(mint_keypair.pubkey())
        uri = await self.upload_metadata(metadata, media, tally=tally)

        payload = self._trade_payload(creator, "create", mint, dev_buy_sol, True, slippage_bps)
        payload["tokenMetadata"] = {"name": metadata.name, "symbol": metadata.symbol, "uri": uri}

        label = f"create {metadata.symbol}"
        raw = await self._build(payload, label, tally)
        tx = self._sign(raw, [mint_keypair, creator.keypair])
        signature = await self._submit(tx, label, tally)
        logger.info(f"Created token {metadata.symbol} at {mint}: {signature}")
        return mint, signature

    async def buy(self, mint: str, wallet: Wallet, sol_amount: float, slippage_bps: int,
                  tally: Optional[RetryTally] = None) -> str:
        label = f"buy {wallet.name or wallet.public_key[:8]}"
        raw = await self._build(self._trade_payload(wallet, "buy", mint, sol_amount, True, slippage_bps), label, tally)
        return await self._submit(self._sign(raw, [wallet.keypair]), label, tally)

    async def sell(self, mint: str, wallet: Wallet, amount_spec: str, slippage_bps: int,
                   tally: Optional[RetryTally] = None) -> str:
        """Sell ``amount_spec`` (a canonical "N%" string or a token amount)."""
        label = f"sell {wallet.name or wallet.public_key[:8]}"
        raw = await self._build(self._trade_payload(wallet, "sell", mint, amount_spec, False, slippage_bps), label, tally)
        return await self._submit(self._sign(raw, [wallet.keypair]), label, tally)

    def close(self) -> None:
        self.session.close()
