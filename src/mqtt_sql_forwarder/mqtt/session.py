"""
Resilient broker session
Keeps one long-lived session alive across network failures:
connect -> subscribe -> poll -> detect disconnect -> reconnect -> resubscribe
"""

import threading
import time
from enum import Enum
from typing import Optional

from .client import BrokerClient, BrokerError, InboundMessage, SessionConfig
from ..utils.logger import SystemFailure


class SessionState(Enum):
    """Broker session lifecycle states"""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SUBSCRIBING = "SUBSCRIBING"
    READY = "READY"
    RECONNECTING = "RECONNECTING"


class ReconnectNotifier:
    """
    Emits the "lost connection, reconnecting..." warning once per disconnection episode

    The notice runs on its own timer thread so the reconnect loop never waits on
    it. While an episode is open further notify() calls are suppressed; resolve()
    cancels the timer the moment the session is back.
    """

    def __init__(self, logger, window_seconds: float = 2.0):
        self.logger = logger
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._episode_open = False

    @property
    def outstanding(self) -> bool:
        """True while the current notice is inside its display window"""
        timer = self._timer
        return timer is not None and timer.is_alive()

    @property
    def episode_open(self) -> bool:
        return self._episode_open

    def notify(self, host: str) -> bool:
        """Start a disconnection episode; returns False when one is already open"""
        with self._lock:
            if self._episode_open:
                return False
            self._episode_open = True

            self.logger.warning(
                f"Lost connection to '{host}', reconnecting...",
                host=host,
                system_failure=SystemFailure.BROKER_CONNECTION_LOST
            )
            self._timer = threading.Timer(self.window_seconds, self._expire, args=(host,))
            self._timer.daemon = True
            self._timer.start()
            return True

    def _expire(self, host: str):
        self.logger.debug("Reconnect notice window elapsed", host=host)

    def resolve(self, host: str):
        """Close the episode after a successful reconnect"""
        with self._lock:
            if not self._episode_open:
                return
            self._close()
        self.logger.warning(f"Reconnected to '{host}'", host=host)

    def cancel(self):
        """Close the episode without announcing a reconnect (shutdown)"""
        with self._lock:
            self._close()

    def _close(self):
        self._episode_open = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class SessionManager:
    """
    Owns one broker connection and presents a blocking poll() to its caller

    poll() either returns the next message or blocks until one is available,
    absorbing connection loss on the way. Connect, reconnect and subscribe
    failures are retried forever at a fixed interval and never escape.
    Not thread-safe: one logical caller drives the session.
    """

    def __init__(
        self,
        client: BrokerClient,
        config: SessionConfig,
        logger,
        metrics,
        notifier: Optional[ReconnectNotifier] = None
    ):
        """
        Initialize session manager

        Args:
            client: Broker client collaborator
            config: Immutable session configuration
            logger: Logger instance
            metrics: Metrics collector
            notifier: Reconnect notifier (built from config when omitted)
        """
        self.client = client
        self.config = config
        self.logger = logger
        self.metrics = metrics
        self.notifier = notifier or ReconnectNotifier(logger, config.reconnect_notice_seconds)

        self.state = SessionState.DISCONNECTED
        self._has_connected = False

    @property
    def host(self) -> str:
        return self.client.server_uri

    @property
    def ready(self) -> bool:
        return self.state is SessionState.READY

    def _transition(self, state: SessionState):
        if state is self.state:
            return
        self.logger.debug(
            "session_state_changed",
            previous=self.state.value,
            state=state.value
        )
        self.state = state
        self.metrics.increment_counter(f"session_{state.value.lower()}")
        self.metrics.set_gauge('broker_connected', 1 if state is SessionState.READY else 0)

    def connect(self):
        """Drive the session to READY, blocking until it gets there"""
        if self.state is SessionState.READY:
            if self.client.is_connected():
                return
            self._connection_lost("transport reported disconnection")

        self._transition(SessionState.CONNECTING)

        while True:
            try:
                self._open()
                self._transition(SessionState.SUBSCRIBING)
                registry = self.config.registry
                self.client.subscribe_many(registry.topics, registry.qos, registry.options)
            except BrokerError as e:
                self._attempt_failed(e)
                continue
            break

        self._has_connected = True
        self._transition(SessionState.READY)
        self.notifier.resolve(self.host)
        self.logger.info(
            f"Subscribed to topics: {list(self.config.registry.topics)}",
            host=self.host
        )
        self.logger.log_system_health(
            'broker_session',
            self.state.value,
            {'host': self.host, 'subscriptions': len(self.config.registry)}
        )

    def _open(self):
        # connect() carries the full options on the first session; later
        # sessions resume through reconnect()
        if self._has_connected:
            self.client.reconnect()
        else:
            self.client.connect(self.config)

    def _attempt_failed(self, error: BrokerError):
        subscribing = self.state is SessionState.SUBSCRIBING
        failure = (
            SystemFailure.BROKER_SUBSCRIBE_FAILED if subscribing
            else SystemFailure.BROKER_CONNECTION_FAILED
        )
        self.metrics.increment_counter('connect_failures')

        if subscribing:
            # A partial subscription is not repaired: drop the connection and
            # retry the whole batch on a fresh one
            self._drop_connection()
            self._transition(SessionState.CONNECTING)

        if self.notifier.episode_open:
            self.logger.debug(
                f"Reconnection error: {error}",
                host=self.host,
                system_failure=failure
            )
        else:
            self.logger.warning(
                f"Error establishing connection to '{self.host}', retrying...",
                host=self.host,
                error=str(error),
                system_failure=failure
            )

        time.sleep(self.config.retry_interval)

    def _drop_connection(self):
        try:
            self.client.disconnect()
        except BrokerError as e:
            self.logger.debug(f"Disconnect after failed subscribe: {e}", host=self.host)

    def _connection_lost(self, reason: str):
        self.logger.debug("Broker connection lost", host=self.host, reason=reason)
        self._transition(SessionState.RECONNECTING)
        self.notifier.notify(self.host)

    def poll(self) -> InboundMessage:
        """
        Return the next inbound message

        Blocks while the session is (re)established. The end-of-stream
        sentinel from the client is folded into a reconnect, so the caller
        only ever sees messages.
        """
        while True:
            if self.state is not SessionState.READY or not self.client.is_connected():
                self.connect()

            message = self.client.receive_next()
            if message is None:
                self._connection_lost("message stream ended")
                continue

            self.metrics.increment_counter('messages_received')
            return message

    def publish(self, topic: str, payload: bytes, qos: int = 1):
        """Publish through the session's connection; raises BrokerError on failure"""
        self.client.publish(topic, payload, qos)

    def close(self):
        """Disconnect and return to DISCONNECTED"""
        self.notifier.cancel()
        if self.state is not SessionState.DISCONNECTED:
            try:
                self.client.disconnect()
            finally:
                self._transition(SessionState.DISCONNECTED)
