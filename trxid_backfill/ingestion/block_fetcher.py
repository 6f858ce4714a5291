"""
ingestion/block_fetcher.py
Fetches one Hive block over JSON-RPC (``condenser_api.get_block``) and turns
it into TrxIdRecords.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from trxid_backfill.errors import NonSuccessResponse, RpcError, TransportError
from trxid_backfill.models.records import TrxIdRecord

log = structlog.get_logger(__name__)

GET_BLOCK_METHOD = "condenser_api.get_block"
REQUEST_HEADERS  = {"Content-Type": "application/json; charset=UTF-8"}


def build_request_payload(block_num: int) -> bytes:
    return json.dumps({
        "jsonrpc": "2.0",
        "method":  GET_BLOCK_METHOD,
        "params":  [int(block_num)],
        "id":      1,
    }).encode("utf-8")


def parse_block_response(block_num: int, body: Any) -> list[TrxIdRecord]:
    """
    Extract the records of one block from a decoded JSON-RPC response.

    A block without ``transaction_ids`` (missing, empty or null result)
    becomes a single record with ``trx_id=None``.
    """
    if not isinstance(body, dict):
        raise RpcError(block_num, f"unexpected response type {type(body).__name__}")
    if body.get("error"):
        error = body["error"]
        if isinstance(error, dict):
            raise RpcError(block_num, f"RPC error: {error.get('code')} {error.get('message')}")
        raise RpcError(block_num, f"RPC error: {error}")

    result = body.get("result") or {}
    if not isinstance(result, dict):
        raise RpcError(block_num, f"unexpected result type {type(result).__name__}")

    trx_ids = result.get("transaction_ids") or []
    if not isinstance(trx_ids, list):
        raise RpcError(block_num, "transaction_ids is not a list")
    if not trx_ids:
        return [TrxIdRecord(trx_id=None, block_num=block_num)]
    return [TrxIdRecord(trx_id=str(trx_id), block_num=block_num) for trx_id in trx_ids]


class HiveBlockFetcher:
    """
    Async JSON-RPC client for block transaction ids.

    Usage
    -----
    async with HiveBlockFetcher("https://api.hive.blog", timeout=30) as fetcher:
        records = await fetcher.fetch(1_000_000)

    ``fetch`` raises TransportError on network failures, RpcError on a
    JSON-RPC error or unreadable body, and NonSuccessResponse on any HTTP
    status other than 200.
    """

    def __init__(
        self,
        api_url: str,
        timeout: float = 30.0,
        max_connections: int = 100,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url      = api_url
        self.timeout      = httpx.Timeout(timeout)
        self.limits       = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(1, max_connections // 2),
        )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout, limits=self.limits)

    async def __aenter__(self) -> "HiveBlockFetcher":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def fetch(self, block_num: int) -> list[TrxIdRecord]:
        try:
            response = await self.client.post(
                self.api_url,
                content=build_request_payload(block_num),
                headers=REQUEST_HEADERS,
            )
        except httpx.RequestError as exc:
            log.warning("fetch.transport_error", block=block_num, error=str(exc) or type(exc).__name__)
            raise TransportError(block_num, str(exc) or type(exc).__name__) from exc

        if response.status_code != httpx.codes.OK:
            raise NonSuccessResponse(block_num, response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise RpcError(block_num, f"invalid JSON body: {exc}") from exc
        return parse_block_response(block_num, body)
