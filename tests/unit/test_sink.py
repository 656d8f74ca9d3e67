import unittest
from unittest.mock import MagicMock, Mock, patch

import psycopg2
from mysql.connector import Error as MySQLError

from mqtt_sql_forwarder.core.translator import RecordTranslator
from mqtt_sql_forwarder.database.connector import (
    MySQLSink,
    PostgreSQLSink,
    SinkRejected,
    SinkUnavailable,
    create_sink,
    parse_database_url,
)


MYSQL_CONFIG = {
    'type': 'mysql',
    'host': 'db.test',
    'database': 'telemetry',
    'user': 'forwarder',
    'password': 'pw',
    'pool_size': 3,
}

POSTGRES_CONFIG = dict(MYSQL_CONFIG, type='postgresql')


class TestMySQLSink(unittest.TestCase):
    """Test suite for the pooled MySQL sink"""

    def setUp(self):
        self.pool_patch = patch('mysql.connector.pooling.MySQLConnectionPool')
        self.pool_class = self.pool_patch.start()
        self.connection = Mock()
        self.cursor = Mock(lastrowid=7)
        self.connection.cursor.return_value = self.cursor
        self.pool_class.return_value.get_connection.return_value = self.connection

        self.statement = RecordTranslator('mysql').translate('temp_readings', b'{"v": 10}')

    def tearDown(self):
        self.pool_patch.stop()

    def test_connect_builds_pool(self):
        sink = MySQLSink(MYSQL_CONFIG)
        sink.connect()

        kwargs = self.pool_class.call_args.kwargs
        self.assertEqual(kwargs['pool_size'], 3)
        self.assertEqual(kwargs['host'], 'db.test')
        self.assertEqual(kwargs['port'], 3306)
        self.assertFalse(kwargs['autocommit'])
        self.assertTrue(sink.is_connected())

    def test_connect_failure(self):
        self.pool_class.side_effect = MySQLError("Access denied")
        with self.assertRaises(SinkUnavailable):
            MySQLSink(MYSQL_CONFIG).connect()

    def test_execute_commits(self):
        sink = MySQLSink(MYSQL_CONFIG)
        sink.connect()

        self.assertEqual(sink.execute(self.statement), 7)

        self.cursor.execute.assert_called_once_with(
            "INSERT INTO `temp_readings` (`v`) VALUES (%s)", (10,)
        )
        self.connection.commit.assert_called_once()
        self.cursor.close.assert_called_once()

    def test_execute_rejected(self):
        sink = MySQLSink(MYSQL_CONFIG)
        sink.connect()
        self.cursor.execute.side_effect = MySQLError("Table 'telemetry.temp_readings' doesn't exist")

        with self.assertRaises(SinkRejected) as ctx:
            sink.execute(self.statement)

        self.assertEqual(ctx.exception.table, 'temp_readings')
        self.connection.rollback.assert_called_once()
        self.connection.commit.assert_not_called()

    def test_parameter_formatting_error_rejected(self):
        """Test a driver-side formatting failure is reported as a rejected record"""
        sink = MySQLSink(MYSQL_CONFIG)
        sink.connect()
        self.cursor.execute.side_effect = ValueError("Could not process parameters")

        with self.assertRaises(SinkRejected):
            sink.execute(self.statement)

        self.connection.rollback.assert_called_once()
        self.cursor.close.assert_called_once()

    def test_execute_without_pool(self):
        with self.assertRaises(SinkRejected):
            MySQLSink(MYSQL_CONFIG).execute(self.statement)


class TestPostgreSQLSink(unittest.TestCase):

    def setUp(self):
        self.connect_patch = patch('psycopg2.connect')
        self.connect = self.connect_patch.start()
        self.connection = MagicMock(closed=0)
        self.cursor = self.connection.cursor.return_value.__enter__.return_value
        self.connect.return_value = self.connection

        self.statement = RecordTranslator('postgresql').translate('temp_readings', b'{"v": 1.5}')

    def tearDown(self):
        self.connect_patch.stop()

    def test_execute_commits(self):
        sink = PostgreSQLSink(POSTGRES_CONFIG)
        sink.connect()
        sink.execute(self.statement)

        self.cursor.execute.assert_called_once_with(
            'INSERT INTO "temp_readings" ("v") VALUES (%s)', (1.5,)
        )
        self.connection.commit.assert_called_once()
        self.assertEqual(self.connect.call_args.kwargs['port'], 5432)

    def test_execute_reconnects_closed_connection(self):
        sink = PostgreSQLSink(POSTGRES_CONFIG)
        sink.connect()
        self.connection.closed = 1
        fresh = MagicMock(closed=0)
        self.connect.return_value = fresh

        sink.execute(self.statement)

        self.assertIs(sink.connection, fresh)
        fresh.commit.assert_called_once()

    def test_execute_rejected(self):
        sink = PostgreSQLSink(POSTGRES_CONFIG)
        sink.connect()
        self.cursor.execute.side_effect = psycopg2.Error("relation does not exist")

        with self.assertRaises(SinkRejected):
            sink.execute(self.statement)
        self.connection.rollback.assert_called_once()

    def test_parameter_formatting_error_rejected(self):
        for error in (TypeError("not all arguments converted"), ValueError("unsupported format")):
            with self.subTest(error=type(error).__name__):
                self.connection.rollback.reset_mock()
                sink = PostgreSQLSink(POSTGRES_CONFIG)
                sink.connect()
                self.cursor.execute.side_effect = error

                with self.assertRaises(SinkRejected):
                    sink.execute(self.statement)
                self.connection.rollback.assert_called_once()

    def test_rollback_failure_keeps_insert_error(self):
        sink = PostgreSQLSink(POSTGRES_CONFIG)
        sink.connect()
        self.cursor.execute.side_effect = psycopg2.Error("relation does not exist")
        self.connection.rollback.side_effect = psycopg2.InterfaceError("connection already closed")

        with self.assertRaises(SinkRejected) as ctx:
            sink.execute(self.statement)
        self.assertIn('relation does not exist', str(ctx.exception))

    def test_connect_failure(self):
        self.connect.side_effect = psycopg2.OperationalError("could not connect")
        with self.assertRaises(SinkUnavailable):
            PostgreSQLSink(POSTGRES_CONFIG).connect()


class TestCreateSink(unittest.TestCase):

    @patch('psycopg2.connect')
    def test_factory_returns_connected_sink(self, connect):
        sink = create_sink(POSTGRES_CONFIG)
        self.assertIsInstance(sink, PostgreSQLSink)
        self.assertEqual(sink.dialect, 'postgresql')
        connect.assert_called_once()

    @patch('mqtt_sql_forwarder.database.connector.time.sleep')
    @patch('psycopg2.connect')
    def test_factory_retries_then_raises(self, connect, sleep):
        connect.side_effect = psycopg2.OperationalError("could not connect")
        with self.assertRaises(SinkUnavailable):
            create_sink(POSTGRES_CONFIG, connect_retries=3, retry_delay=0)
        self.assertEqual(connect.call_count, 3)
        self.assertEqual(sleep.call_count, 2)

    def test_unknown_type(self):
        with self.assertRaises(ValueError):
            create_sink(dict(MYSQL_CONFIG, type='oracle'))


class TestParseDatabaseUrl(unittest.TestCase):

    def test_mysql_url(self):
        config = parse_database_url('mysql://user:p%40ss@db:3307/telemetry')
        self.assertEqual(config, {
            'type': 'mysql',
            'host': 'db',
            'port': 3307,
            'database': 'telemetry',
            'user': 'user',
            'password': 'p@ss',
        })

    def test_postgres_default_port(self):
        config = parse_database_url('postgres://db/metrics')
        self.assertEqual(config['type'], 'postgresql')
        self.assertEqual(config['port'], 5432)
        self.assertIsNone(config['user'])

    def test_unsupported_scheme(self):
        with self.assertRaises(ValueError):
            parse_database_url('sqlite:///tmp/x.db')


if __name__ == '__main__':
    unittest.main()
