"""Ordered chain of strategies for opening a data path to the cluster.

The peripheral's real handshake is unknown, so negotiation tries each known
strategy in a fixed priority order and keeps a record of what happened. A
strategy only counts as successful once a well-formed telemetry frame has
arrived on a subscription.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

from ridelink.catalog import CapabilityCatalog, CapabilityFlag, Characteristic
from ridelink.config import DEFAULT_AUTH_KEY
from ridelink.errors import BLE_ERRORS, BondingFailed, WriteFailed
from ridelink.event_log import EventLog

NOTIFY_CAPABILITIES = CapabilityFlag.NOTIFY | CapabilityFlag.INDICATE
WRITE_CAPABILITIES = CapabilityFlag.WRITE | CapabilityFlag.WRITE_WITHOUT_RESPONSE


class StrategyKind(enum.IntEnum):
    """Strategy tags; the integer value is the priority (lower runs first)."""

    DIRECT_NOTIFY = 1
    GENERIC_KEY_WRITE = 2
    BONDING_REQUEST = 3


@dataclass(frozen=True, slots=True)
class AuthStrategyResult:
    strategy: str
    succeeded: bool
    detail: str = ""

    def describe(self) -> str:
        outcome = "succeeded" if self.succeeded else "failed"
        return f"{self.strategy} {outcome}: {self.detail}"


@dataclass(frozen=True, slots=True)
class NegotiationOutcome:
    attempts: Tuple[AuthStrategyResult, ...] = ()

    @property
    def succeeded(self) -> bool:
        return any(result.succeeded for result in self.attempts)

    @property
    def winner(self) -> Optional[AuthStrategyResult]:
        for result in self.attempts:
            if result.succeeded:
                return result
        return None


class NegotiationContext:
    """What a strategy may touch while it runs.

    ``subscribe`` is supplied by the session and starts notifications on a
    characteristic; ``first_frame`` is set by the session as soon as a frame
    decodes cleanly.
    """

    def __init__(
        self,
        *,
        client: Any,
        catalog: CapabilityCatalog,
        log: EventLog,
        subscribe: Callable[[Characteristic], Awaitable[None]],
        first_frame: asyncio.Event,
        auth_key: bytes = DEFAULT_AUTH_KEY,
        frame_timeout: float = 5.0,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.log = log
        self.auth_key = auth_key
        self.frame_timeout = frame_timeout
        self.first_frame = first_frame
        self.subscribed_to: Optional[Characteristic] = None
        self._subscribe = subscribe

    async def ensure_subscribed(self) -> Optional[Characteristic]:
        """Subscribe to the first notifiable characteristic once.

        Returns ``None`` when the catalog has nothing to subscribe to. Errors
        from the BLE stack propagate to the calling strategy.
        """
        if self.subscribed_to is not None:
            return self.subscribed_to
        char = self.catalog.find(NOTIFY_CAPABILITIES)
        if char is None:
            return None
        await self._subscribe(char)
        self.subscribed_to = char
        return char

    async def wait_for_stream(self) -> bool:
        if self.first_frame.is_set():
            return True
        try:
            await asyncio.wait_for(self.first_frame.wait(), timeout=self.frame_timeout)
        except asyncio.TimeoutError:
            return False
        return True


class AuthStrategy(Protocol):
    kind: StrategyKind
    name: str

    async def attempt(self, context: NegotiationContext) -> AuthStrategyResult:
        """Run the strategy once and report the outcome."""


async def _confirm_stream(name: str, context: NegotiationContext, action: str) -> AuthStrategyResult:
    try:
        char = await context.ensure_subscribed()
    except BLE_ERRORS as exc:
        return AuthStrategyResult(name, False, f"{action}; subscription failed: {exc}")
    if char is None:
        return AuthStrategyResult(name, False, f"{action}; no notifiable characteristic to confirm a stream")
    if await context.wait_for_stream():
        return AuthStrategyResult(name, True, f"{action}; data stream live on {char.uuid}")
    return AuthStrategyResult(name, False, f"{action}; no data stream followed")


class DirectNotify:
    kind = StrategyKind.DIRECT_NOTIFY
    name = "direct-notify"

    async def attempt(self, context: NegotiationContext) -> AuthStrategyResult:
        char = context.catalog.find(NOTIFY_CAPABILITIES)
        if char is None:
            return AuthStrategyResult(self.name, False, "no notifiable or indicatable characteristic")

        context.log.append(f"Found potential data characteristic: {char.uuid}. Subscribing...")
        try:
            await context.ensure_subscribed()
        except BLE_ERRORS as exc:
            return AuthStrategyResult(self.name, False, f"subscription to {char.uuid} failed: {exc}")

        if await context.wait_for_stream():
            return AuthStrategyResult(self.name, True, f"data stream live on {char.uuid}")
        return AuthStrategyResult(
            self.name,
            False,
            f"subscribed to {char.uuid} but no well-formed frame within {context.frame_timeout:g}s",
        )


class GenericKeyWrite:
    """Write a fixed credential, then look for a stream.

    The write itself never counts as success: some clusters only start
    notifying after they see a key, so the stream check decides.
    """

    kind = StrategyKind.GENERIC_KEY_WRITE
    name = "generic-key-write"

    def __init__(self, key: bytes | None = None) -> None:
        self.key = key

    async def attempt(self, context: NegotiationContext) -> AuthStrategyResult:
        char = context.catalog.find(WRITE_CAPABILITIES)
        if char is None:
            return AuthStrategyResult(self.name, False, "no writable characteristic")

        key = self.key or context.auth_key
        with_response = bool(char.flags & CapabilityFlag.WRITE)
        context.log.append("Attempting Auth Method: Generic Key Write...")
        try:
            await context.client.write_gatt_char(char.uuid, key, response=with_response)
        except BLE_ERRORS as exc:
            error = WriteFailed(f"Generic key write failed: {exc}")
            context.log.append(str(error))
            return AuthStrategyResult(self.name, False, f"{error.reason} on {char.uuid}: {exc}")

        context.log.append("Generic key written. Now attempting to monitor for data again.")
        return await _confirm_stream(self.name, context, f"key written to {char.uuid}")


class BondingRequest:
    """Ask the platform to pair. Advisory: a refusal is logged, not fatal."""

    kind = StrategyKind.BONDING_REQUEST
    name = "bonding-request"

    async def attempt(self, context: NegotiationContext) -> AuthStrategyResult:
        context.log.append("Attempting Auth Method: Bonding...")
        try:
            await self._pair(context.client)
        except BondingFailed as exc:
            context.log.append(f"Bonding request failed: {exc}")
            action = f"{exc.reason}: {exc}"
        else:
            context.log.append("Bonding successful or already bonded.")
            action = "bonded"
        return await _confirm_stream(self.name, context, action)

    async def _pair(self, client: Any) -> None:
        pair = getattr(client, "pair", None)
        if pair is None:
            raise BondingFailed("client does not support pairing")
        try:
            paired = await pair()
        except NotImplementedError as exc:
            raise BondingFailed("pairing is not implemented on this backend") from exc
        except BLE_ERRORS as exc:
            raise BondingFailed(str(exc) or type(exc).__name__) from exc
        if paired is False:
            raise BondingFailed("platform refused pairing")


def default_strategies(auth_key: bytes | None = None) -> List[AuthStrategy]:
    return [DirectNotify(), GenericKeyWrite(auth_key), BondingRequest()]


def order_strategies(strategies: Iterable[AuthStrategy]) -> List[AuthStrategy]:
    """Priority order by :class:`StrategyKind`; ties keep their given order."""
    return sorted(strategies, key=lambda strategy: int(strategy.kind))


class Negotiator:
    def __init__(self, strategies: Sequence[AuthStrategy] | None = None) -> None:
        self.strategies = order_strategies(strategies if strategies is not None else default_strategies())

    async def negotiate(self, context: NegotiationContext) -> NegotiationOutcome:
        attempts: List[AuthStrategyResult] = []
        for strategy in self.strategies:
            result = await strategy.attempt(context)
            attempts.append(result)
            context.log.append(f"Auth strategy {result.describe()}")
            if result.succeeded:
                break
        return NegotiationOutcome(tuple(attempts))


__all__ = [
    "AuthStrategy",
    "AuthStrategyResult",
    "BondingRequest",
    "DirectNotify",
    "GenericKeyWrite",
    "NegotiationContext",
    "NegotiationOutcome",
    "Negotiator",
    "StrategyKind",
    "default_strategies",
    "order_strategies",
]
