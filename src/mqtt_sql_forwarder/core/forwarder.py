"""
Forwarding loop: broker session -> record translator -> storage sink
One message at a time, in receipt order; a bad message never stops the stream
"""

import json
from datetime import datetime, timezone
from typing import Optional

from .dead_letter_queue import DeadLetterQueue, DLQMessage
from .destination import DestinationMapping
from .translator import RecordTranslator, TranslationError, InsertStatement
from ..database.connector import StorageSink, SinkRejected
from ..mqtt.client import BrokerError, InboundMessage
from ..utils.logger import StructuredLogger
from ..utils.metrics import Timer

PAYLOAD_PREVIEW_BYTES = 256


def payload_preview(payload: bytes) -> str:
    text = payload[:PAYLOAD_PREVIEW_BYTES].decode('utf-8', errors='replace')
    if len(payload) > PAYLOAD_PREVIEW_BYTES:
        text += '...'
    return text


class ForwardingLoop:
    """
    Pulls messages from the session and inserts them into the sink
    """

    def __init__(
        self,
        session,
        translator: RecordTranslator,
        destinations: DestinationMapping,
        sink: StorageSink,
        logger,
        metrics,
        dlq: Optional[DeadLetterQueue] = None,
        echo_topic: Optional[str] = None
    ):
        """
        Initialize forwarding loop

        Args:
            session: Session manager providing poll() and publish()
            translator: Record translator
            destinations: Topic to table mapping
            sink: Storage sink
            logger: Logger instance
            metrics: Metrics collector
            dlq: Dead letter queue for dropped messages (optional)
            echo_topic: Topic that receives a summary of every stored record (optional)
        """
        self.session = session
        self.translator = translator
        self.destinations = destinations
        self.sink = sink
        self.logger = logger
        self.metrics = metrics
        self.dlq = dlq
        self.echo_topic = echo_topic

        self.running = False

    def process(self, message: InboundMessage) -> bool:
        """
        Forward one message

        Returns:
            True when the record was inserted, False when the message was dropped
        """
        table = self.destinations.resolve(message.topic)

        try:
            with Timer(self.metrics, 'insert'):
                statement = self.translator.translate(table, message.payload)
                self.sink.execute(statement)

        except TranslationError as e:
            self._drop(message, table, e, DLQMessage.TRANSLATION_FAILURE, 'translation_rejected')
            return False

        except SinkRejected as e:
            self._drop(message, table, e, DLQMessage.SINK_FAILURE, 'sink_rejected')
            return False

        except Exception as e:
            self._drop(message, table, e, DLQMessage.PROCESSING_FAILURE, 'processing_failed')
            return False

        self.metrics.increment_counter('messages_forwarded')
        self.logger.log_message_lifecycle(
            message.topic,
            'FORWARDED',
            data={
                'table': table,
                'columns': statement.column_names,
                'retained': message.retained,
                'qos': message.qos
            }
        )

        if self.echo_topic:
            self._echo(statement)

        return True

    def _drop(self, message: InboundMessage, table: str, error: Exception,
              message_type: DLQMessage, counter: str):
        failure = StructuredLogger.map_exception_to_system_failure(error)
        self.metrics.increment_counter(counter)
        self.logger.log_message_lifecycle(
            message.topic,
            'DROPPED',
            data={
                'table': table,
                'payload': payload_preview(message.payload),
                'retained': message.retained
            },
            error=str(error),
            system_failure=failure
        )

        if self.dlq is not None:
            try:
                self.dlq.add_message(
                    topic=message.topic,
                    message_type=message_type,
                    payload=message.payload,
                    error=str(error),
                    system_failure=failure.value
                )
            except OSError as dlq_error:
                self.logger.error(f"Failed to add message to DLQ: {dlq_error}", topic=message.topic)

    def _echo(self, statement: InsertStatement):
        """Publish the stored keys and values back to the broker"""
        out = {
            'keys': statement.column_names,
            'values': list(statement.params),
            'timestamp': datetime.now(timezone.utc).isoformat()
        }
        try:
            self.session.publish(self.echo_topic, json.dumps(out, indent=2).encode('utf-8'), 1)
        except BrokerError as e:
            self.logger.warning(f"Echo publish to '{self.echo_topic}' failed: {e}")

    def run_once(self) -> bool:
        """Pull the next message (blocking) and forward it"""
        message = self.session.poll()
        return self.process(message)

    def run(self):
        """Forward messages until stop() is called"""
        self.running = True
        self.logger.info("Forwarding loop started")

        while self.running:
            self.run_once()

        self.logger.info("Forwarding loop stopped")

    def stop(self):
        self.running = False
