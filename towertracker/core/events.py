import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class Destination(str, Enum):
    MAIN_MENU = "main_menu"
    CANCEL = "cancel"
    SETTINGS = "settings"
    SHARE_SETTINGS = "share_settings"


NavigateHandler = Callable[[Destination, Any], Awaitable[None]]
DispatchHandler = Callable[..., Awaitable[None]]
ErrorHandler = Callable[[BaseException, Any], Awaitable[None]]


class UnknownHandlerError(LookupError):
    pass


@dataclass
class FlowHandlers:
    navigate: NavigateHandler
    error: ErrorHandler
    dispatch: Dict[str, DispatchHandler] = field(default_factory=dict)


class Subscription:
    """Live registration of one flow instance's handlers on the bus.

    Closing is idempotent. Usable as a context manager so the handlers live
    exactly as long as the block that owns the flow.
    """

    def __init__(self, bus: "EventBus", flow_id: str, handlers: FlowHandlers) -> None:
        self.bus = bus
        self.flow_id = flow_id
        self.handlers = handlers
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.bus._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    def subscriber_count(self, flow_id: str) -> int:
        return len(self._subscriptions.get(flow_id, []))

    def subscribe(self, flow_id: str, handlers: FlowHandlers) -> Subscription:
        subscription = Subscription(self, flow_id, handlers)
        self._subscriptions.setdefault(flow_id, []).append(subscription)
        return subscription

    def close_flow(self, flow_id: str) -> None:
        for subscription in list(self._subscriptions.get(flow_id, [])):
            subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.flow_id)
        if not subs:
            return
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            del self._subscriptions[subscription.flow_id]

    def publish_navigate(self, flow_id: str, destination: Destination, context: Any = None) -> List[asyncio.Task]:
        return self._publish(
            flow_id,
            lambda sub: sub.handlers.navigate(destination, context),
            context,
            f"navigate:{destination.value}",
        )

    def publish_dispatch(self, flow_id: str, name: str, context: Any = None, *args: Any) -> List[asyncio.Task]:
        def call(sub: Subscription) -> Awaitable[None]:
            handler = sub.handlers.dispatch.get(name)
            if handler is None:
                raise UnknownHandlerError(f"No handler named {name!r} for flow {flow_id}")
            return handler(context, *args)

        return self._publish(flow_id, call, context, f"dispatch:{name}")

    def _publish(
        self,
        flow_id: str,
        call: Callable[[Subscription], Awaitable[None]],
        context: Any,
        label: str,
    ) -> List[asyncio.Task]:
        subs = list(self._subscriptions.get(flow_id, []))
        if not subs:
            logger.warning("Dropped %s for flow %s with no subscribers", label, flow_id)
            return []

        loop = asyncio.get_running_loop()
        tasks: List[asyncio.Task] = []
        for sub in subs:
            task = loop.create_task(self._deliver(sub, call, context, label))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _deliver(
        self,
        sub: Subscription,
        call: Callable[[Subscription], Awaitable[None]],
        context: Any,
        label: str,
    ) -> None:
        if sub.closed:
            return
        try:
            await call(sub)
        except Exception as exc:
            logger.exception("Handler for %s failed in flow %s", label, sub.flow_id)
            await self._report(sub, exc, context)

    async def _report(self, sub: Subscription, exc: BaseException, context: Any) -> None:
        try:
            await sub.handlers.error(exc, context)
        except Exception:
            logger.exception("Error handler failed in flow %s", sub.flow_id)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight handler; used at shutdown and in tests."""
        pending = list(self._tasks)
        if pending:
            await asyncio.wait(pending, timeout=timeout)
