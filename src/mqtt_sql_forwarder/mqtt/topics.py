"""
Topic registry: the ordered set of subscriptions requested from the broker
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Tuple, Optional, Dict, Any

from ..config.errors import ConfigurationError


VALID_QOS = (0, 1, 2)


class RetainHandling(IntEnum):
    """MQTT v5 retain-handling subscription option"""
    SEND_RETAINED_ON_SUBSCRIBE = 0
    SEND_RETAINED_ON_NEW = 1
    DONT_SEND_RETAINED = 2

    @classmethod
    def from_code(cls, code: Any) -> 'RetainHandling':
        # bool is an int subclass but never a valid code
        if isinstance(code, bool) or not isinstance(code, int):
            raise ConfigurationError(
                f"Invalid retain_handling {code!r}: valid input is 0, 1, and 2"
            )
        try:
            return cls(code)
        except ValueError:
            raise ConfigurationError(
                f"Invalid retain_handling {code!r}: valid input is 0, 1, and 2"
            ) from None


@dataclass(frozen=True)
class SubscribeOptions:
    no_local: bool = False
    retain_as_published: bool = False
    retain_handling: RetainHandling = RetainHandling.SEND_RETAINED_ON_SUBSCRIBE

    @classmethod
    def from_dict(cls, options: Optional[Dict[str, Any]]) -> 'SubscribeOptions':
        """Build options from a config mapping; a missing mapping yields the defaults"""
        if options is None:
            return cls()
        if not isinstance(options, dict):
            raise ConfigurationError(f"Subscription options must be a mapping, got {options!r}")

        # retain_as_publish is the spelling used by older config files
        retain_as_published = options.get(
            'retain_as_published', options.get('retain_as_publish', False)
        )
        return cls(
            no_local=bool(options.get('no_local', False)),
            retain_as_published=bool(retain_as_published),
            retain_handling=RetainHandling.from_code(options.get('retain_handling', 0)),
        )


@dataclass(frozen=True)
class TopicSubscription:
    topic: str
    qos: int
    options: SubscribeOptions = field(default_factory=SubscribeOptions)


class TopicRegistry:
    """
    Ordered topic subscriptions for one broker session

    The broker's subscribe-many call is positional across the topic, QoS and
    option vectors, so insertion order is preserved and the vectors always have
    equal length. The registry is frozen by finalize() and is read-only after.
    """

    def __init__(self):
        self._topics: List[str] = []
        self._qos: List[int] = []
        self._options: List[SubscribeOptions] = []
        self._finalized = False

    def add(self, topic: str, qos: int = 1, options: Optional[SubscribeOptions] = None) -> 'TopicRegistry':
        if self._finalized:
            raise ConfigurationError("Topic registry is finalized and cannot be modified")
        if not isinstance(topic, str) or not topic:
            raise ConfigurationError(f"Topic filter must be a non-empty string, got {topic!r}")
        if isinstance(qos, bool) or qos not in VALID_QOS:
            raise ConfigurationError(f"Invalid QoS {qos!r} for topic '{topic}': must be 0, 1 or 2")

        self._topics.append(topic)
        self._qos.append(qos)
        self._options.append(options or SubscribeOptions())
        return self

    def finalize(self) -> 'TopicRegistry':
        if not (len(self._topics) == len(self._qos) == len(self._options)):
            raise ConfigurationError(
                "Subscription vectors differ in length: "
                f"{len(self._topics)} topics, {len(self._qos)} qos, {len(self._options)} options"
            )
        if not self._topics:
            raise ConfigurationError("At least one topic subscription is required")
        self._finalized = True
        return self

    @classmethod
    def from_subscriptions(cls, subscriptions: List[TopicSubscription]) -> 'TopicRegistry':
        registry = cls()
        for subscription in subscriptions:
            registry.add(subscription.topic, subscription.qos, subscription.options)
        return registry.finalize()

    @property
    def topics(self) -> Tuple[str, ...]:
        return tuple(self._topics)

    @property
    def qos(self) -> Tuple[int, ...]:
        return tuple(self._qos)

    @property
    def options(self) -> Tuple[SubscribeOptions, ...]:
        return tuple(self._options)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def __iter__(self):
        for topic, qos, options in zip(self._topics, self._qos, self._options):
            yield TopicSubscription(topic, qos, options)

    def __len__(self) -> int:
        return len(self._topics)

    def __repr__(self) -> str:
        return f"TopicRegistry({list(zip(self._topics, self._qos))})"
