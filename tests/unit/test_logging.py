import shutil
import tempfile
import unittest

from mqtt_sql_forwarder.config.errors import ConfigurationError
from mqtt_sql_forwarder.core.translator import UnsupportedShape
from mqtt_sql_forwarder.database.connector import SinkRejected, SinkUnavailable
from mqtt_sql_forwarder.mqtt.client import BrokerError, SubscribeError
from mqtt_sql_forwarder.utils.logger import StructuredLogger, SystemFailure
from mqtt_sql_forwarder.utils.metrics import LATENCY_WINDOW, MetricsCollector, Timer


class TestSystemFailureMapping(unittest.TestCase):

    def test_forwarder_exceptions(self):
        cases = [
            (ConfigurationError("x"), SystemFailure.CONFIGURATION_INVALID),
            (UnsupportedShape("x"), SystemFailure.UNSUPPORTED_SHAPE),
            (SinkRejected("x"), SystemFailure.SINK_REJECTED),
            (SinkUnavailable("x"), SystemFailure.SINK_UNAVAILABLE),
            (BrokerError("x"), SystemFailure.BROKER_CONNECTION_FAILED),
            (SubscribeError("x"), SystemFailure.BROKER_SUBSCRIBE_FAILED),
            (RuntimeError("x"), SystemFailure.UNKNOWN_ERROR),
            (None, SystemFailure.UNKNOWN_ERROR),
        ]
        for exception, expected in cases:
            with self.subTest(exception=exception):
                self.assertIs(StructuredLogger.map_exception_to_system_failure(exception), expected)


class TestStructuredLogger(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_writes_log_file(self):
        logger = StructuredLogger('forwarder_logging_test', log_dir=self.tmpdir, level='DEBUG')
        logger.log_message_lifecycle('sensors/temp', 'FORWARDED', data={'table': 't'})

        log_file = logger.log_dir / 'forwarder_logging_test.log'
        self.assertTrue(log_file.exists())

    def test_health_snapshot_written(self):
        logger = StructuredLogger('forwarder_health_test', log_dir=self.tmpdir, level='INFO')
        logger.log_system_health('broker_session', 'READY', {'subscriptions': 2})

        content = (logger.log_dir / 'forwarder_health_test.log').read_text()
        self.assertIn('system_health_check', content)
        self.assertIn('broker_session', content)


class TestMetricsCollector(unittest.TestCase):

    def test_counters_and_latency(self):
        metrics = MetricsCollector(enable_prometheus=False)
        metrics.increment_counter('messages_forwarded')
        metrics.increment_counter('messages_forwarded', 2)
        with Timer(metrics, 'insert'):
            pass

        summary = metrics.get_metrics_summary()
        self.assertEqual(summary['counters']['messages_forwarded'], 3)
        self.assertEqual(summary['histograms']['insert']['count'], 1)

        metrics.reset_metrics()
        self.assertEqual(metrics.get_metrics_summary()['counters'], {})

    def test_latency_window_is_bounded(self):
        """Test only recent samples are kept while the count covers every sample"""
        metrics = MetricsCollector(enable_prometheus=False)
        total = LATENCY_WINDOW + 500
        for i in range(total):
            metrics.record_latency('insert', float(i))

        insert = metrics.get_metrics_summary()['histograms']['insert']
        self.assertEqual(insert['count'], total)
        self.assertEqual(insert['window'], LATENCY_WINDOW)
        self.assertEqual(insert['min'], 500.0)
        self.assertEqual(insert['max'], float(total - 1))

        metrics.reset_metrics()
        self.assertEqual(metrics.get_metrics_summary()['histograms'], {})


if __name__ == '__main__':
    unittest.main()
