"""
Main application entry point - MQTT to SQL forwarder
Broker session -> record translator -> storage sink
"""

import argparse
import os
import signal
import sys
from typing import List, Optional

from .config.errors import ConfigurationError
from .config.settings import Settings
from .core.dead_letter_queue import DeadLetterQueue
from .core.forwarder import ForwardingLoop
from .core.translator import RecordTranslator
from .database.connector import create_sink, SinkUnavailable
from .mqtt.paho_client import PahoBrokerClient
from .mqtt.session import SessionManager
from .utils.logger import StructuredLogger, SystemFailure
from .utils.metrics import MetricsCollector


DEFAULT_CONFIG_FILE = "config/config.yaml"

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_SINK_UNAVAILABLE = 3


class ForwarderApplication:
    """
    Forwarder: Receives from MQTT -> Translates -> Inserts into target database
    """

    def __init__(self, config_file: str = DEFAULT_CONFIG_FILE):
        """Initialize forwarder application"""
        print("=" * 70)
        print("  MQTT SQL FORWARDER - MQTT to Database Bridge")
        print("=" * 70)

        # Load configuration
        print("\n[1/7] Loading configuration...")
        self.settings = Settings(config_file)
        session_config = self.settings.build_session_config()
        print("✓ Configuration loaded")

        # Setup logger
        print("\n[2/7] Setting up logging...")
        self.logger = StructuredLogger(
            name="mqtt_sql_forwarder",
            log_dir=self.settings.get('application.log_dir', 'logs'),
            level=self.settings.get('application.log_level', 'INFO')
        )
        print("✓ Logging configured")

        # Setup metrics
        print("\n[3/7] Setting up metrics...")
        self.metrics = MetricsCollector(
            enable_prometheus=self.settings.get('application.enable_metrics', True),
            port=self.settings.get('application.metrics_port', 9090),
            logger=self.logger
        )
        print("✓ Metrics configured")

        # Setup storage sink
        print("\n[4/7] Connecting to target database...")
        target_config = self.settings.get_target_db_config()
        try:
            self.sink = create_sink(target_config)
        except SinkUnavailable as e:
            self.logger.error(
                f"Target database unavailable: {e}",
                system_failure=SystemFailure.SINK_UNAVAILABLE,
                host=target_config.get('host')
            )
            raise
        print(f"✓ Connected to {target_config['type']} database")

        # Setup broker session
        print("\n[5/7] Setting up broker session...")
        self.client = PahoBrokerClient(session_config, self.logger)
        self.session = SessionManager(self.client, session_config, self.logger, self.metrics)
        print("✓ Broker session ready")

        # Setup DLQ
        print("\n[6/7] Setting up dead letter queue...")
        dead_letter = self.settings.get_dead_letter_config()
        self.dlq = None
        if dead_letter['enabled']:
            self.dlq = DeadLetterQueue(
                storage_dir=dead_letter['storage_dir'],
                max_messages=dead_letter['max_messages'],
                retention_days=dead_letter['retention_days'],
                logger=self.logger
            )
            print("✓ DLQ ready")
        else:
            print("✓ DLQ disabled")

        # Setup forwarding loop
        print("\n[7/7] Setting up forwarding loop...")
        self.forwarder = ForwardingLoop(
            session=self.session,
            translator=RecordTranslator(dialect=self.sink.dialect),
            destinations=self.settings.build_destination_mapping(),
            sink=self.sink,
            logger=self.logger,
            metrics=self.metrics,
            dlq=self.dlq,
            echo_topic=self.settings.get('mqtt.echo_topic')
        )
        print("✓ Forwarding loop ready")

        self.running = False

        # Setup signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        print("\n✓ Forwarder initialized successfully!")
        print("=" * 70)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.stop()
        sys.exit(EXIT_OK)

    def start(self):
        """Start forwarding (blocking)"""
        self.logger.info("=" * 70)
        self.logger.info("Starting Forwarder")
        self.logger.info("=" * 70)

        if self.dlq is not None:
            removed = self.dlq.cleanup_old_messages()
            if removed:
                self.logger.info(f"Removed {removed} expired DLQ entries")

        self.running = True

        self.logger.info(f"Connecting to broker '{self.session.host}'...")
        self.session.connect()

        self.logger.info("✓ Forwarder started successfully!")
        self.forwarder.run()

    def stop(self):
        """Stop the forwarder"""
        if not self.running:
            return

        self.logger.info("Stopping forwarder...")
        self.running = False

        self.forwarder.stop()
        self.session.close()
        self.sink.disconnect()

        summary = self.metrics.get_metrics_summary()
        counters = summary['counters']
        self.logger.info("=" * 70)
        self.logger.info("Final Statistics:")
        self.logger.info(f"  Received: {counters.get('messages_received', 0)}")
        self.logger.info(f"  Forwarded: {counters.get('messages_forwarded', 0)}")
        self.logger.info(f"  Translation rejected: {counters.get('translation_rejected', 0)}")
        self.logger.info(f"  Sink rejected: {counters.get('sink_rejected', 0)}")
        self.logger.info("=" * 70)

        self.logger.info("✓ Forwarder stopped")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(
        prog='mqtt-sql-forwarder',
        description='Forward JSON messages from an MQTT broker into SQL tables'
    )
    parser.add_argument(
        '--config',
        default=os.getenv('FORWARDER_CONFIG', DEFAULT_CONFIG_FILE),
        help='Path to the YAML configuration file (default: $FORWARDER_CONFIG or %(default)s)'
    )
    args = parser.parse_args(argv)

    try:
        app = ForwarderApplication(args.config)
    except ConfigurationError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except SinkUnavailable as e:
        print(f"✗ Target database unavailable: {e}", file=sys.stderr)
        return EXIT_SINK_UNAVAILABLE

    try:
        app.start()
    except KeyboardInterrupt:
        app.logger.info("Keyboard interrupt received")
    finally:
        app.stop()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
