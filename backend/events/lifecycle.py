"""Lifecycle event bus with explicit, ordered consumer chains.

Consumers are not registered with priorities. Instead, for every
(event type, stage) pair the application declares one ordered list of
consumers, and the bus runs exactly that list, one consumer after the
other, for each event. Declaring "persister before chainer" is therefore a
visible line in the chain table rather than a numeric convention.

A consumer raising does not stop the chain: the error is logged, the
remaining consumers still run, and the bus raises ``ConsumerChainError``
once the chain is done so the worker can redeliver the event.
"""

from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence

import structlog

from errors import ConsumerChainError
from events.types import LifecycleEvent, LifecycleEventType
from workflow.state_machine import StageType

logger = structlog.get_logger(__name__)

Consumer = Callable[[LifecycleEvent], Awaitable[None]]
ChainKey = tuple[LifecycleEventType, StageType]


def consumer_name(consumer: Consumer) -> str:
    name = getattr(consumer, "name", None)
    if isinstance(name, str):
        return name
    return getattr(consumer, "__qualname__", type(consumer).__name__)


class LifecycleBus:
    """Runs the declared consumer chain for each lifecycle event.

    Attributes:
        _chains: Mapping from (event type, stage) to the ordered consumers.
    """

    def __init__(self, chains: Mapping[ChainKey, Sequence[Consumer]] | None = None) -> None:
        self._chains: dict[ChainKey, tuple[Consumer, ...]] = {}
        for key, consumers in (chains or {}).items():
            self.declare(key[0], key[1], consumers)

    def declare(
        self,
        event_type: LifecycleEventType,
        stage: StageType,
        consumers: Iterable[Consumer],
    ) -> None:
        """Set the full ordered consumer list for one event type and stage.

        Declaring the same pair twice replaces the earlier list.
        """
        chain = tuple(consumers)
        self._chains[(event_type, stage)] = chain
        logger.debug(
            "lifecycle_chain_declared",
            event_type=event_type.value,
            stage=stage.value,
            consumers=[consumer_name(c) for c in chain],
        )

    def chain_for(self, event_type: LifecycleEventType, stage: StageType) -> tuple[Consumer, ...]:
        return self._chains.get((event_type, stage), ())

    async def deliver(self, event: LifecycleEvent) -> None:
        """Run every consumer of the event's chain in declared order.

        Raises:
            ConsumerChainError: If at least one consumer raised. Raised only
                after the whole chain has run.
        """
        chain = self.chain_for(event.type, event.stage)
        if not chain:
            logger.debug(
                "lifecycle_event_unrouted",
                event_type=event.type.value,
                stage=event.stage.value,
                task_id=event.task_id,
            )
            return

        failures: list[tuple[str, BaseException]] = []
        for consumer in chain:
            name = consumer_name(consumer)
            try:
                await consumer(event)
            except Exception as e:
                logger.error(
                    "lifecycle_consumer_failed",
                    consumer=name,
                    event_type=event.type.value,
                    stage=event.stage.value,
                    task_id=event.task_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                failures.append((name, e))

        if failures:
            raise ConsumerChainError(event.type.value, failures)

        logger.debug(
            "lifecycle_event_delivered",
            event_type=event.type.value,
            stage=event.stage.value,
            task_id=event.task_id,
            consumer_count=len(chain),
        )
