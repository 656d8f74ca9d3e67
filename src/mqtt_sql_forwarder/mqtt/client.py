"""
Broker client interface and the session data it is driven with
The session manager only talks to brokers through BrokerClient
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .topics import TopicRegistry, SubscribeOptions, VALID_QOS
from ..config.errors import ConfigurationError
from ..utils.logger import SystemFailure


class BrokerError(Exception):
    """Transient broker failure: connect, reconnect, subscribe or publish did not succeed"""

    system_failure = SystemFailure.BROKER_CONNECTION_FAILED


class SubscribeError(BrokerError):
    """The broker did not accept the whole subscription batch"""

    system_failure = SystemFailure.BROKER_SUBSCRIBE_FAILED


@dataclass(frozen=True)
class LastWill:
    topic: str
    payload: str
    qos: int = 1
    retain: bool = False


@dataclass(frozen=True)
class SessionConfig:
    """
    Everything needed to open and keep one broker session
    Built once at startup and never mutated
    """
    broker_uri: str
    client_id: str
    registry: TopicRegistry
    keep_alive: int = 5
    clean_start: bool = False
    session_expiry_interval: int = 60
    last_will: Optional[LastWill] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    connect_timeout: float = 10.0
    retry_interval: float = 1.0
    reconnect_notice_seconds: float = 2.0

    def __post_init__(self):
        if not self.broker_uri:
            raise ConfigurationError("broker_uri is required")
        if not self.client_id:
            raise ConfigurationError("client_id is required")
        if not self.registry.finalized:
            raise ConfigurationError("Topic registry must be finalized before building a session")
        if self.keep_alive <= 0:
            raise ConfigurationError(f"keep_alive must be positive, got {self.keep_alive}")
        if self.session_expiry_interval < 0:
            raise ConfigurationError(
                f"session_expiry_interval must not be negative, got {self.session_expiry_interval}"
            )
        if self.connect_timeout <= 0:
            raise ConfigurationError(f"connect_timeout must be positive, got {self.connect_timeout}")
        if self.retry_interval <= 0:
            raise ConfigurationError(f"retry_interval must be positive, got {self.retry_interval}")
        if self.last_will is not None and self.last_will.qos not in VALID_QOS:
            raise ConfigurationError(f"Invalid last will QoS {self.last_will.qos!r}")


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    payload: bytes
    retained: bool = False
    qos: int = 0


class BrokerClient(ABC):
    """Abstract broker client used by the session manager"""

    @property
    @abstractmethod
    def server_uri(self) -> str:
        """Broker URI, used in log messages"""
        pass

    @abstractmethod
    def connect(self, config: SessionConfig):
        """Open the first connection; raises BrokerError on failure"""
        pass

    @abstractmethod
    def reconnect(self):
        """Re-open a previously opened connection; raises BrokerError on failure"""
        pass

    @abstractmethod
    def subscribe_many(
        self,
        topics: Sequence[str],
        qos: Sequence[int],
        options: Sequence[SubscribeOptions]
    ):
        """Subscribe to every topic in one request; raises BrokerError on failure"""
        pass

    @abstractmethod
    def receive_next(self) -> Optional[InboundMessage]:
        """Block for the next message; None means the message stream ended"""
        pass

    @abstractmethod
    def publish(self, topic: str, payload: bytes, qos: int = 1):
        """Publish a message; raises BrokerError on failure"""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def disconnect(self):
        pass
