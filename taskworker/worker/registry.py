import logging
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from taskworker.worker.models import TopicSubscription

logger = logging.getLogger(__name__)

# handler(task: ExternalTask, ctx: TaskContext) -> None
Handler = Callable[..., None]


class Route:
    __slots__ = ("handler", "subscription")

    def __init__(self, handler: Handler, subscription: TopicSubscription):
        self.handler = handler
        self.subscription = subscription

    @property
    def topic_name(self) -> str:
        return self.subscription.topic_name

    @property
    def lock_duration_ms(self) -> int:
        return self.subscription.lock_duration


class RoutingTable:
    """Read-only topic -> route snapshot shared by the poll loop and every dispatched task."""

    def __init__(self, routes: Mapping[str, Route]):
        self._routes = MappingProxyType(dict(routes))
        self._subscriptions: Tuple[TopicSubscription, ...] = tuple(
            route.subscription for route in self._routes.values()
        )

    @property
    def subscriptions(self) -> Tuple[TopicSubscription, ...]:
        return self._subscriptions

    def route(self, topic_name: str) -> Optional[Route]:
        return self._routes.get(topic_name)

    def resolve(self, topic_name: str) -> Optional[Handler]:
        route = self._routes.get(topic_name)
        return route.handler if route else None

    def __contains__(self, topic_name: str) -> bool:
        return topic_name in self._routes

    def __len__(self) -> int:
        return len(self._routes)


class TopicRegistry:
    """
    Mutable builder for the routing table. Topics keep the order of their
    first registration; registering a topic again replaces its handler and
    subscription in place (last write wins).
    """
    def __init__(self):
        self._routes: Dict[str, Route] = {}

    def register(self, topic_name: str, handler: Handler, lock_duration_ms: int,
                 variables: Optional[Iterable[str]] = None, **filters) -> TopicSubscription:
        if not callable(handler):
            raise TypeError(f"Handler for topic {topic_name!r} is not callable")
        if lock_duration_ms <= 0:
            raise ValueError(f"Lock duration for topic {topic_name!r} must be positive, got {lock_duration_ms}")

        subscription = TopicSubscription(
            topic_name=topic_name,
            lock_duration=lock_duration_ms,
            variables=list(variables) if variables is not None else None,
            **filters,
        )
        if topic_name in self._routes:
            logger.warning(f"Replacing handler already registered for topic {topic_name!r}")
        self._routes[topic_name] = Route(handler, subscription)
        logger.info(f"Registered handler topic={topic_name} lockDuration={lock_duration_ms}")
        return subscription

    def resolve(self, topic_name: str) -> Optional[Handler]:
        route = self._routes.get(topic_name)
        return route.handler if route else None

    @property
    def topics(self) -> List[str]:
        return list(self._routes)

    def freeze(self) -> RoutingTable:
        return RoutingTable(self._routes)

    def __len__(self) -> int:
        return len(self._routes)
