"""Tests for the strategy chain used to open a data stream."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, List
from unittest import IsolatedAsyncioTestCase

from bleak.exc import BleakError

from ridelink.catalog import CapabilityCatalog, Characteristic
from ridelink.config import DEFAULT_AUTH_KEY
from ridelink.event_log import EventLog
from ridelink.negotiator import (
    AuthStrategyResult,
    BondingRequest,
    DirectNotify,
    GenericKeyWrite,
    NegotiationContext,
    Negotiator,
    StrategyKind,
    default_strategies,
    order_strategies,
)

from tests.fakes import CONTROL_CHAR, DATA_CHAR, notify_and_write_layout, write_only_layout


class _ScriptedStrategy:
    def __init__(self, kind: StrategyKind, succeeds: bool, calls: List[str], name: str | None = None) -> None:
        self.kind = kind
        self.name = name or kind.name.lower()
        self.succeeds = succeeds
        self.calls = calls

    async def attempt(self, context: NegotiationContext) -> AuthStrategyResult:
        self.calls.append(self.name)
        return AuthStrategyResult(self.name, self.succeeds, "scripted")


class _Client:
    def __init__(self, *, pair_result: Any = True, write_error: BaseException | None = None) -> None:
        self.pair_result = pair_result
        self.write_error = write_error
        self.writes: List[tuple] = []

    async def write_gatt_char(self, uuid: str, data: bytes, response: bool = False) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((uuid, data, response))

    async def pair(self) -> Any:
        if isinstance(self.pair_result, BaseException):
            raise self.pair_result
        return self.pair_result


class NegotiatorTest(IsolatedAsyncioTestCase):
    def _context(self, layout, client: Any, *, stream_on_subscribe: bool = False) -> NegotiationContext:
        first_frame = asyncio.Event()
        self.subscribed: List[Characteristic] = []

        async def subscribe(char: Characteristic) -> None:
            self.subscribed.append(char)
            if stream_on_subscribe:
                first_frame.set()

        return NegotiationContext(
            client=client,
            catalog=CapabilityCatalog.from_bleak(layout),
            log=EventLog(),
            subscribe=subscribe,
            first_frame=first_frame,
            frame_timeout=0.05,
        )

    def test_order_is_by_priority_and_stable(self) -> None:
        calls: List[str] = []
        bonding = _ScriptedStrategy(StrategyKind.BONDING_REQUEST, False, calls)
        key_a = _ScriptedStrategy(StrategyKind.GENERIC_KEY_WRITE, False, calls, name="key-a")
        key_b = _ScriptedStrategy(StrategyKind.GENERIC_KEY_WRITE, False, calls, name="key-b")
        direct = _ScriptedStrategy(StrategyKind.DIRECT_NOTIFY, False, calls)

        ordered = order_strategies([bonding, key_a, direct, key_b])

        self.assertEqual([s.name for s in ordered], ["direct_notify", "key-a", "key-b", "bonding_request"])
        self.assertEqual(
            [type(s) for s in order_strategies(reversed(default_strategies()))],
            [DirectNotify, GenericKeyWrite, BondingRequest],
        )

    async def test_halts_at_first_success(self) -> None:
        calls: List[str] = []
        negotiator = Negotiator(
            [
                _ScriptedStrategy(StrategyKind.DIRECT_NOTIFY, False, calls),
                _ScriptedStrategy(StrategyKind.GENERIC_KEY_WRITE, True, calls),
                _ScriptedStrategy(StrategyKind.BONDING_REQUEST, True, calls),
            ]
        )
        context = self._context(notify_and_write_layout(), _Client())

        outcome = await negotiator.negotiate(context)

        self.assertTrue(outcome.succeeded)
        self.assertEqual(calls, ["direct_notify", "generic_key_write"])
        self.assertEqual(outcome.winner.strategy, "generic_key_write")
        self.assertEqual(len(outcome.attempts), 2)

    async def test_all_failures_are_recorded(self) -> None:
        calls: List[str] = []
        negotiator = Negotiator(
            [_ScriptedStrategy(kind, False, calls) for kind in StrategyKind]
        )
        outcome = await negotiator.negotiate(self._context(notify_and_write_layout(), _Client()))

        self.assertFalse(outcome.succeeded)
        self.assertIsNone(outcome.winner)
        self.assertEqual([a.strategy for a in outcome.attempts], calls)
        self.assertEqual(len(calls), 3)

    async def test_direct_notify_succeeds_on_stream(self) -> None:
        context = self._context(notify_and_write_layout(), _Client(), stream_on_subscribe=True)

        result = await DirectNotify().attempt(context)

        self.assertTrue(result.succeeded)
        self.assertEqual([c.uuid for c in self.subscribed], [DATA_CHAR])

    async def test_direct_notify_without_notifiable_characteristic(self) -> None:
        context = self._context(write_only_layout(), _Client())

        result = await DirectNotify().attempt(context)

        self.assertFalse(result.succeeded)
        self.assertEqual(self.subscribed, [])

    async def test_direct_notify_times_out_without_frames(self) -> None:
        context = self._context(notify_and_write_layout(), _Client())

        result = await DirectNotify().attempt(context)

        self.assertFalse(result.succeeded)
        self.assertIn("no well-formed frame", result.detail)

    async def test_key_write_alone_is_not_success(self) -> None:
        client = _Client()
        context = self._context(write_only_layout(), client)

        result = await GenericKeyWrite().attempt(context)

        self.assertFalse(result.succeeded)
        self.assertEqual(client.writes, [(CONTROL_CHAR, DEFAULT_AUTH_KEY, False)])

    async def test_key_write_uses_response_when_supported(self) -> None:
        client = _Client()
        context = self._context(notify_and_write_layout(), client, stream_on_subscribe=True)

        result = await GenericKeyWrite(b"SECRET").attempt(context)

        self.assertTrue(result.succeeded)
        self.assertEqual(client.writes, [(CONTROL_CHAR, b"SECRET", True)])

    async def test_rejected_write_is_reported(self) -> None:
        context = self._context(notify_and_write_layout(), _Client(write_error=BleakError("rejected")))

        result = await GenericKeyWrite().attempt(context)

        self.assertFalse(result.succeeded)
        self.assertIn("WriteFailed", result.detail)
        self.assertEqual(self.subscribed, [])

    async def test_bonding_failure_is_not_fatal(self) -> None:
        context = self._context(
            notify_and_write_layout(),
            _Client(pair_result=NotImplementedError()),
            stream_on_subscribe=True,
        )

        result = await BondingRequest().attempt(context)

        self.assertTrue(result.succeeded)
        self.assertIn("BondingFailed", result.detail)
        messages = [entry.message for entry in context.log.entries()]
        self.assertTrue(any(m.startswith("Bonding request failed") for m in messages))

    async def test_bonding_without_pair_support(self) -> None:
        context = self._context(write_only_layout(), SimpleNamespace())

        result = await BondingRequest().attempt(context)

        self.assertFalse(result.succeeded)
        self.assertIn("no notifiable characteristic", result.detail)

    async def test_subscription_happens_once_across_strategies(self) -> None:
        context = self._context(notify_and_write_layout(), _Client())

        await Negotiator().negotiate(context)

        self.assertEqual(len(self.subscribed), 1)


if __name__ == "__main__":
    import unittest

    unittest.main()
