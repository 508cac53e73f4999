"""Fakes and helpers shared by the tests."""

import asyncio
from datetime import datetime, timedelta, timezone

from bitcoin.core import CTransaction, b2lx

from swap_oracle.errors import OrderNotFoundError
from swap_oracle.models import OrderStatus, SpendableOutput


async def wait_until(predicate, timeout: float = 2.0):
    """Spin the loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class RecordingSleep:
    """Drop-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 5, 29, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeExchange:
    """Scriptable exchange: statuses are served in order, last one repeats."""

    def __init__(self, order_reference: str = "R1"):
        self.order_reference = order_reference
        self.statuses = {}
        self.status_calls = []
        self.submitted = []
        self.cancelled = []

    def script(self, order_reference, *responses):
        self.statuses[order_reference] = list(responses)

    async def get_quote(self, params):
        return {"sellAmount": "100", "buyAmount": "99", "feeAmount": "1"}

    async def submit_order(self, params):
        self.submitted.append(params)
        return self.order_reference

    async def get_order_status(self, order_reference):
        self.status_calls.append(order_reference)
        responses = self.statuses.get(order_reference)
        if not responses:
            raise OrderNotFoundError(order_reference)
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return OrderStatus.from_wire(response)
        return response

    async def cancel_order(self, order_reference):
        self.cancelled.append(order_reference)
        return {"cancellationTxHash": "0xdead"}

    async def check_health(self):
        return True

    async def close(self):
        pass


class FakePushChannel:
    """In-memory stand-in for the websocket push channel."""

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.connected = False
        self.connect_calls = 0
        self.sent = []
        self.on_message = None
        self.on_disconnect = None

    def set_handlers(self, on_message, on_disconnect):
        self.on_message = on_message
        self.on_disconnect = on_disconnect

    async def connect(self, timeout):
        self.connect_calls += 1
        self.connected = self.reachable
        return self.connected

    async def subscribe(self, swap_id, order_reference):
        if not self.connected:
            return False
        self.sent.append(("subscribe", swap_id, order_reference))
        return True

    async def unsubscribe(self, swap_id, order_reference):
        if not self.connected:
            return False
        self.sent.append(("unsubscribe", swap_id, order_reference))
        return True

    async def deliver(self, message):
        await self.on_message(message)

    def drop(self):
        self.connected = False
        self.on_disconnect()

    async def close(self):
        self.connected = False

    def messages(self, kind):
        return [m for m in self.sent if m[0] == kind]


class FakeLedger:
    def __init__(self):
        self.outputs = {}
        self.broadcasts = []
        self.lookups = []
        self.broadcast_errors = []

    def fund(self, address, *amounts):
        self.outputs[address] = [
            SpendableOutput(txid=f"{i + 1:064x}", vout=i, amount=amount)
            for i, amount in enumerate(amounts)
        ]

    async def list_spendable_outputs(self, address):
        self.lookups.append(address)
        return list(self.outputs.get(address, []))

    async def broadcast(self, raw_transaction):
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        self.broadcasts.append(raw_transaction)
        tx = CTransaction.deserialize(bytes.fromhex(raw_transaction))
        return b2lx(tx.GetTxid())

    async def close(self):
        pass

