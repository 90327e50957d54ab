import asyncio
import logging
import uuid

from asgiref.sync import sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from valuation_engine import ValuationError

from portfolio_app.engine import ServiceHolder
from portfolio_app.serializers import serialize_error, serialize_snapshot, serialize_valuation

logger = logging.getLogger("portfolio_app")

SLOW_CONSUMER_CLOSE_CODE = 4008


class PortfolioConsumer(AsyncJsonWebsocketConsumer):
    """
    Streams one snapshot per portfolio mutation, starting with the current one.

    Each socket owns a hub Subscription. The publishing thread only sets an
    asyncio.Event on this socket's loop; the pump task drains the bounded
    subscription queue, so no thread is parked per client.

    Client actions:
        {"action": "ping"}
        {"action": "snapshot"}
        {"action": "value", "instrument_id": ..., "model": ..., "request_id": ...}
        {"action": "cancel", "request_id": ...}

    Valuations still running when the socket goes away are cancelled.
    """

    async def connect(self):
        await self.accept()
        self.valuations = {}  # request_id -> (ValuationTask, asyncio.Task)
        self.ready = asyncio.Event()
        loop = asyncio.get_running_loop()
        service = ServiceHolder.instance()
        self.subscription = await sync_to_async(service.subscribe, thread_sensitive=False)()
        self.subscription.on_ready(lambda: loop.call_soon_threadsafe(self.ready.set))
        self.pump = asyncio.ensure_future(self._forward())
        logger.info(f"Client connected: {self.channel_name} "
                    f"(subscription {self.subscription.id[:8]})")

    async def _forward(self):
        subscription = self.subscription
        while True:
            await self.ready.wait()
            self.ready.clear()
            snapshot = subscription.get_nowait()
            while snapshot is not None:
                await self.send_json(serialize_snapshot(snapshot))
                snapshot = subscription.get_nowait()
            if subscription.closed:
                break
        if subscription.close_reason == "slow consumer":
            logger.warning(f"Dropping slow client {self.channel_name}")
            await self.close(code=SLOW_CONSUMER_CLOSE_CODE)

    async def receive_json(self, content, **kwargs):
        action = content.get("action") if isinstance(content, dict) else None
        if action == "ping":
            await self.send_json({"type": "pong"})
        elif action == "snapshot":
            snapshot = await sync_to_async(
                ServiceHolder.instance().snapshot, thread_sensitive=False,
            )()
            await self.send_json(serialize_snapshot(snapshot, message_type="snapshot_reply"))
        elif action == "value":
            await self._start_valuation(content)
        elif action == "cancel":
            await self._cancel_valuation(content.get("request_id"))
        else:
            await self.send_json({"type": "error", "message": f"Unknown action {action!r}"})

    # ── Valuations ───────────────────────────────────────────────────────

    async def _send_error(self, error, request_id=None):
        payload = serialize_error(error)
        payload["type"] = "error"
        if request_id is not None:
            payload["request_id"] = request_id
        await self.send_json(payload)

    async def _start_valuation(self, content):
        request_id = str(content.get("request_id") or uuid.uuid4())
        if request_id in self.valuations:
            await self.send_json({"type": "error", "request_id": request_id,
                                  "message": f"Request {request_id} is already running"})
            return
        model = content.get("model")
        try:
            task = ServiceHolder.instance().value_instrument(
                content.get("instrument_id"), model=None if model is None else str(model),
            )
        except ValuationError as e:
            await self._send_error(e, request_id)
            return
        await self.send_json({"type": "valuation_started", "request_id": request_id})
        waiter = asyncio.ensure_future(self._await_valuation(request_id, task))
        self.valuations[request_id] = (task, waiter)

    async def _await_valuation(self, request_id, task):
        try:
            await asyncio.wait([asyncio.wrap_future(task.future)])
            try:
                result = task.result(timeout=0)
            except ValuationError as e:
                await self._send_error(e, request_id)
            else:
                await self.send_json(serialize_valuation(result, request_id))
        finally:
            self.valuations.pop(request_id, None)

    async def _cancel_valuation(self, request_id):
        entry = self.valuations.get(str(request_id))
        if entry is None:
            await self.send_json({"type": "error", "request_id": request_id,
                                  "message": f"No running valuation {request_id!r}"})
            return
        entry[0].cancel()

    async def disconnect(self, close_code):
        subscription = getattr(self, "subscription", None)
        if subscription is not None:
            subscription.close()
        pump = getattr(self, "pump", None)
        if pump is not None:
            pump.cancel()
        valuations = list(getattr(self, "valuations", {}).values())
        for task, waiter in valuations:
            task.cancel()
            waiter.cancel()
        if valuations:
            logger.info(f"Cancelled {len(valuations)} valuation(s) for {self.channel_name}")
        logger.info(f"Client disconnected: {self.channel_name} ({close_code})")
