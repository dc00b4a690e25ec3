"""Resolve 4-byte function selectors to text signatures and decode call arguments.

Lookups go cache -> built-in table -> 4byte-compatible HTTP API. Failures of any
kind degrade to "unknown" and are cached as such for the cache's lifetime.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Protocol

import httpx
from eth_abi import decode as abi_decode
from eth_abi.exceptions import ABITypeError, DecodingError, NoEntriesFound, ParseError
from web3 import Web3

from evmdecoder.config import get_settings
from evmdecoder.tokens.constants import KNOWN_SELECTORS

logger = logging.getLogger(__name__)


def get_selector(data: str | None) -> str | None:
    """Leading 4 bytes of call data as 0x-prefixed hex, None if shorter."""
    if not data:
        return None
    body = data[2:] if data.startswith("0x") else data
    if len(body) < 8:
        return None
    return "0x" + body[:8].lower()


def function_selector(signature: str) -> str:
    return "0x" + bytes(Web3.keccak(text=signature))[:4].hex()


class SignatureCache(Protocol):
    def lookup(self, selector: str) -> tuple[bool, str | None]:
        """Return (hit, signature). A hit with signature None is a cached miss."""
        ...

    def store(self, selector: str, signature: str | None) -> None:
        ...


class MemorySignatureCache:
    """Per-process memo table with an optional TTL. Not persisted."""

    def __init__(self, ttl: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[str | None, float]] = {}

    def lookup(self, selector: str) -> tuple[bool, str | None]:
        entry = self._entries.get(selector)
        if entry is None:
            return False, None
        signature, stored_at = entry
        if self.ttl is not None and self._clock() - stored_at > self.ttl:
            del self._entries[selector]
            return False, None
        return True, signature

    def store(self, selector: str, signature: str | None) -> None:
        self._entries[selector] = (signature, self._clock())


class SignatureResolver:
    """Selector -> text signature with caching and a bounded network lookup."""

    def __init__(
        self,
        api_url: str | None = None,
        timeout: float | None = None,
        enabled: bool | None = None,
        cache: SignatureCache | None = None,
        known: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_url = api_url or settings.signature_api_url
        self.timeout = timeout if timeout is not None else settings.signature_lookup_timeout
        self.enabled = settings.signature_lookup_enabled if enabled is None else enabled
        self.cache = cache if cache is not None else MemorySignatureCache(ttl=settings.signature_cache_ttl)
        self.known = KNOWN_SELECTORS if known is None else known
        self._transport = transport

    async def resolve(self, selector: str) -> str | None:
        selector = selector.lower()
        hit, signature = self.cache.lookup(selector)
        if hit:
            return signature

        signature = self.known.get(selector)
        if signature is None and self.enabled:
            signature = await self._fetch(selector)

        self.cache.store(selector, signature)
        return signature

    async def _fetch(self, selector: str) -> str | None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.api_url, params={"hex_signature": selector})
                resp.raise_for_status()
                results = resp.json().get("results") or []
                if results:
                    return results[0]["text_signature"]
                logger.debug(f"No signature known for {selector}")
        except httpx.HTTPError as e:
            logger.warning(f"Signature lookup for {selector} failed: {e!r}")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Unexpected signature API payload for {selector}: {e!r}")
        return None


def split_signature(signature: str) -> tuple[str, list[str]]:
    """'transfer(address,uint256)' -> ('transfer', ['address', 'uint256'])."""
    name, sep, rest = signature.partition("(")
    if not sep or not rest.endswith(")") or not name:
        raise ValueError(f"Not a function signature: {signature}")
    params = rest[:-1]

    types: list[str] = []
    depth = 0
    current = ""
    for ch in params:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
        else:
            current += ch
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in {signature}")
    if current:
        types.append(current)
    return name, types


def _stringify(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return json.dumps([_stringify(v) for v in value])
    if isinstance(value, str) and value.startswith("0x") and len(value) == 42:
        return value.lower()
    return str(value)


def decode_arguments(data: str, signature: str) -> dict[str, str] | None:
    """Decode call arguments against a text signature. None when they do not fit."""
    try:
        _, types = split_signature(signature)
        if get_selector(data) != function_selector(signature):
            return None
        payload = bytes.fromhex(data[2:] if data.startswith("0x") else data)[4:]
        values = abi_decode(types, payload)
    except (DecodingError, ParseError, ABITypeError, NoEntriesFound, ValueError, OverflowError) as e:
        logger.debug(f"Could not decode arguments for {signature}: {e}")
        return None
    return {f"arg{i}": _stringify(v) for i, v in enumerate(values)}
