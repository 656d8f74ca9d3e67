"""
paho-mqtt implementation of the broker client (MQTT v5)
- Network I/O runs on paho's background loop thread
- on_message only enqueues; the session manager pulls from the queue
- Reconnection is owned by the session manager, not by paho
"""

import queue
import threading
from typing import Optional, Sequence, Tuple
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.subscribeoptions import SubscribeOptions as PahoSubscribeOptions

from .client import BrokerClient, BrokerError, SubscribeError, InboundMessage, SessionConfig
from .topics import SubscribeOptions
from ..config.errors import ConfigurationError
from ..utils.logger import SystemFailure


DEFAULT_PORTS = {
    'mqtt': (1883, False),
    'tcp': (1883, False),
    'mqtts': (8883, True),
    'ssl': (8883, True),
}

# Keeps paho's own loop from reconnecting before loop_stop() ends it
PAHO_RECONNECT_DELAY = 3600


def parse_broker_uri(uri: str) -> Tuple[str, int, bool]:
    """
    Split a broker URI into host, port and TLS flag

    Args:
        uri: e.g. 'mqtt://broker.local:1883' or 'mqtts://broker.local'

    Returns:
        (host, port, use_tls)
    """
    parsed = urlparse(uri)
    scheme = parsed.scheme.lower()

    if scheme not in DEFAULT_PORTS:
        raise ConfigurationError(
            f"Unsupported broker URI scheme '{parsed.scheme}' in {uri!r}: "
            f"expected one of {sorted(DEFAULT_PORTS)}"
        )
    if not parsed.hostname:
        raise ConfigurationError(f"Broker URI has no host: {uri!r}")

    default_port, use_tls = DEFAULT_PORTS[scheme]
    try:
        port = parsed.port or default_port
    except ValueError:
        raise ConfigurationError(f"Broker URI has an invalid port: {uri!r}") from None

    return parsed.hostname, port, use_tls


def to_paho_options(qos: int, options: SubscribeOptions) -> PahoSubscribeOptions:
    return PahoSubscribeOptions(
        qos=qos,
        noLocal=options.no_local,
        retainAsPublished=options.retain_as_published,
        retainHandling=int(options.retain_handling),
    )


class PahoBrokerClient(BrokerClient):
    """
    Broker client backed by paho.mqtt.client.Client
    """

    def __init__(self, config: SessionConfig, logger):
        """
        Initialize paho client

        Args:
            config: Session configuration
            logger: Logger instance
        """
        self.config = config
        self.logger = logger
        self.host, self.port, self.use_tls = parse_broker_uri(config.broker_uri)

        self._messages = queue.Queue()
        self._connack = threading.Event()
        self._connack_reason = None
        self._connected = False

        self._suback_condition = threading.Condition()
        self._subacks = {}  # mid -> reason codes

        self.client = None
        self._setup_client()

    @property
    def server_uri(self) -> str:
        return self.config.broker_uri

    def _setup_client(self):
        """Setup paho client: identity, credentials, last will and callbacks"""
        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            protocol=mqtt.MQTTv5
        )

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.on_subscribe = self._on_subscribe

        if self.config.username:
            self.client.username_pw_set(self.config.username, self.config.password)

        if self.use_tls:
            self.client.tls_set()

        will = self.config.last_will
        if will is not None:
            self.client.will_set(will.topic, will.payload, qos=will.qos, retain=will.retain)

        self.client.reconnect_delay_set(
            min_delay=PAHO_RECONNECT_DELAY,
            max_delay=PAHO_RECONNECT_DELAY
        )

    def _connect_properties(self) -> Properties:
        properties = Properties(PacketTypes.CONNECT)
        properties.SessionExpiryInterval = self.config.session_expiry_interval
        return properties

    def connect(self, config: Optional[SessionConfig] = None):
        """Open the connection and wait for CONNACK"""
        self._stop_loop()
        self._connack.clear()

        try:
            self.client.connect(
                self.host,
                self.port,
                keepalive=self.config.keep_alive,
                clean_start=self.config.clean_start,
                properties=self._connect_properties()
            )
        except (OSError, ValueError) as e:
            raise BrokerError(f"Connect to {self.server_uri} failed: {e}") from e

        self._start_loop()
        self._wait_for_connack()

    def reconnect(self):
        """Re-open the connection with the parameters of the first connect"""
        self._stop_loop()
        self._connack.clear()

        try:
            self.client.reconnect()
        except (OSError, ValueError) as e:
            raise BrokerError(f"Reconnect to {self.server_uri} failed: {e}") from e

        self._start_loop()
        self._wait_for_connack()

    def _wait_for_connack(self):
        if not self._connack.wait(self.config.connect_timeout):
            self._stop_loop()
            raise BrokerError(
                f"No CONNACK from {self.server_uri} within {self.config.connect_timeout}s"
            )

        reason = self._connack_reason
        if reason is not None and reason.is_failure:
            self._stop_loop()
            raise BrokerError(f"Broker {self.server_uri} refused connection: {reason}")

    def subscribe_many(
        self,
        topics: Sequence[str],
        qos: Sequence[int],
        options: Sequence[SubscribeOptions]
    ):
        """Subscribe to all topics in a single SUBSCRIBE packet and wait for SUBACK"""
        if not (len(topics) == len(qos) == len(options)):
            raise ValueError(
                f"Subscription vectors differ in length: {len(topics)}, {len(qos)}, {len(options)}"
            )

        subscriptions = [
            (topic, to_paho_options(q, opts))
            for topic, q, opts in zip(topics, qos, options)
        ]

        result, mid = self.client.subscribe(subscriptions)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeError(f"Subscribe request failed: {mqtt.error_string(result)}")

        with self._suback_condition:
            self._suback_condition.wait_for(
                lambda: mid in self._subacks or not self._connected,
                timeout=self.config.connect_timeout
            )
            reason_codes = self._subacks.pop(mid, None)

        if reason_codes is None:
            if self.is_connected():
                # No per-call completion; a live connection is taken as confirmation
                self.logger.warning(
                    f"No SUBACK within {self.config.connect_timeout}s, connection still up",
                    topics=list(topics)
                )
                return
            raise SubscribeError("Connection lost before SUBACK")

        rejected = [
            f"{topic} ({code})"
            for topic, code in zip(topics, reason_codes)
            if code.is_failure
        ]
        if rejected:
            raise SubscribeError(f"Broker rejected subscriptions: {', '.join(rejected)}")

    def receive_next(self) -> Optional[InboundMessage]:
        """Block until the next message arrives; None when the stream ended"""
        while True:
            message = self._messages.get()
            if message is None and self.is_connected():
                # Sentinel left over from an earlier, already repaired, disconnect
                continue
            return message

    def publish(self, topic: str, payload: bytes, qos: int = 1):
        info = self.client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerError(f"Publish to '{topic}' failed: {mqtt.error_string(info.rc)}")

    def is_connected(self) -> bool:
        return self._connected and self.client.is_connected()

    def disconnect(self):
        try:
            self.client.disconnect()
        finally:
            self._stop_loop()
            self._connected = False

    def _start_loop(self):
        self.client.loop_start()

    def _stop_loop(self):
        self.client.loop_stop()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._connack_reason = reason_code
        self._connected = not reason_code.is_failure

        if self._connected:
            self.logger.info(f"Connected to broker '{self.server_uri}'",
                             session_present=getattr(flags, 'session_present', None))
        else:
            self.logger.warning(f"Broker '{self.server_uri}' refused connection: {reason_code}",
                                system_failure=SystemFailure.BROKER_CONNECTION_FAILED)
        self._connack.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._connected = False
        self.logger.debug("Broker disconnected", reason=str(reason_code))

        with self._suback_condition:
            self._suback_condition.notify_all()

        # End-of-stream sentinel for receive_next()
        self._messages.put(None)

    def _on_message(self, client, userdata, msg):
        self._messages.put(InboundMessage(
            topic=msg.topic,
            payload=bytes(msg.payload),
            retained=bool(msg.retain),
            qos=msg.qos
        ))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        with self._suback_condition:
            self._subacks[mid] = list(reason_code_list)
            self._suback_condition.notify_all()
