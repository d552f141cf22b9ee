import asyncio
import logging

logger = logging.getLogger(__name__)

# Slow websocket consumers drop events rather than grow without bound
QUEUE_MAXSIZE = 100


class WorkflowEventBus:
    """In-memory pub/sub for workflow state changes, keyed by patient."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._global_subscribers: set[asyncio.Queue] = set()

    def subscribe_all(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self._global_subscribers.add(queue)
        return queue

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        self._global_subscribers.discard(queue)

    def subscribe(self, patient_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self._subscribers.setdefault(patient_id, set()).add(queue)
        return queue

    def unsubscribe(self, patient_id: str, queue: asyncio.Queue) -> None:
        if patient_id in self._subscribers:
            self._subscribers[patient_id].discard(queue)
            if not self._subscribers[patient_id]:
                del self._subscribers[patient_id]

    def publish(self, patient_id: str | None, event: dict) -> None:
        """Fan an event out to the patient's subscribers and global listeners.

        Synchronous so the controller can publish between state changes
        without yielding to the event loop.
        """
        event = {**event, "patient_id": patient_id}
        targets = list(self._global_subscribers)
        if patient_id:
            targets.extend(self._subscribers.get(patient_id, ()))
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Workflow event queue full; dropping %s event", event.get("type"))
