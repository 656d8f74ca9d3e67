"""
Storage sinks for forwarded records
Supports MySQL (pooled) and PostgreSQL
"""

import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
from urllib.parse import urlparse, unquote

import mysql.connector
import mysql.connector.pooling
from mysql.connector import Error as MySQLError
import psycopg2

from ..core.translator import InsertStatement
from ..utils.logger import SystemFailure


class SinkError(Exception):
    """Base class for storage sink failures"""

    system_failure = SystemFailure.SINK_REJECTED


class SinkRejected(SinkError):
    """The database refused one insert; the message is dropped, not retried"""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class SinkUnavailable(SinkError):
    """The database could not be reached at startup"""

    system_failure = SystemFailure.SINK_UNAVAILABLE


DEFAULT_PORTS = {
    'mysql': 3306,
    'postgresql': 5432,
}

URL_SCHEMES = {
    'mysql': 'mysql',
    'mysql+mysqlconnector': 'mysql',
    'postgres': 'postgresql',
    'postgresql': 'postgresql',
}


def parse_database_url(url: str) -> Dict[str, Any]:
    """
    Turn a DATABASE_URL style string into a connector config dict

    Args:
        url: e.g. 'mysql://user:secret@db:3306/telemetry'

    Returns:
        Config dict with type, host, port, database, user and password
    """
    parsed = urlparse(url)
    db_type = URL_SCHEMES.get(parsed.scheme.lower())
    if db_type is None:
        raise ValueError(f"Unsupported database URL scheme: {parsed.scheme}")

    return {
        'type': db_type,
        'host': parsed.hostname or 'localhost',
        'port': parsed.port or DEFAULT_PORTS[db_type],
        'database': parsed.path.lstrip('/'),
        'user': unquote(parsed.username) if parsed.username else None,
        'password': unquote(parsed.password) if parsed.password else None,
    }


class StorageSink(ABC):
    """Abstract base class for storage sinks"""

    dialect: str = ''

    @abstractmethod
    def connect(self):
        """Establish database connection; raises SinkUnavailable"""
        pass

    @abstractmethod
    def disconnect(self):
        """Close database connection"""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if database is connected"""
        pass

    @abstractmethod
    def execute(self, statement: InsertStatement):
        """Execute one insert and commit; raises SinkRejected"""
        pass


class MySQLSink(StorageSink):
    """
    MySQL sink with connection pooling
    Each insert runs in its own transaction on a pooled connection
    """

    dialect = 'mysql'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize MySQL sink

        Args:
            config: Database configuration dict
        """
        self.config = config
        self._connection_pool = None

        self.pool_name = f"forwarder_pool_{uuid.uuid4().hex[:8]}"
        self.pool_size = config.get('pool_size', 5)

    def _create_connection_pool(self):
        """Create MySQL connection pool"""
        pool_config = {
            'pool_name': self.pool_name,
            'pool_size': self.pool_size,
            'pool_reset_session': True,
            'host': self.config['host'],
            'port': self.config.get('port', DEFAULT_PORTS['mysql']),
            'database': self.config['database'],
            'user': self.config['user'],
            'password': self.config.get('password') or '',
            'charset': 'utf8mb4',
            'collation': 'utf8mb4_unicode_ci',
            'autocommit': False,
            'time_zone': '+00:00',
            'connection_timeout': self.config.get('connection_timeout', 30),
        }

        self._connection_pool = mysql.connector.pooling.MySQLConnectionPool(**pool_config)

    def connect(self):
        """Create the pool and check that a connection can be taken from it"""
        try:
            self._create_connection_pool()
            connection = self._get_connection()
            self._return_connection(connection)
        except MySQLError as e:
            raise SinkUnavailable(f"Failed to connect to MySQL: {e}") from e

    def _get_connection(self):
        """
        Get connection from pool with a ping health check
        A dead connection is reconnected once before giving up
        """
        connection = self._connection_pool.get_connection()
        try:
            connection.ping(reconnect=False, attempts=1, delay=0)
        except MySQLError:
            connection.ping(reconnect=True, attempts=1, delay=0)
        return connection

    def _return_connection(self, connection):
        """Return connection to pool"""
        if connection:
            connection.close()

    def disconnect(self):
        """Release the pool"""
        self._connection_pool = None

    def is_connected(self) -> bool:
        """Check if a healthy connection can be taken from the pool"""
        if not self._connection_pool:
            return False
        try:
            connection = self._get_connection()
            self._return_connection(connection)
            return True
        except MySQLError:
            return False

    def execute(self, statement: InsertStatement):
        """Insert one record"""
        if not self._connection_pool:
            raise SinkRejected("MySQL sink is not connected", table=statement.table)

        connection = None
        cursor = None
        try:
            connection = self._get_connection()
            cursor = connection.cursor()
            cursor.execute(statement.sql, statement.params)
            connection.commit()
            return cursor.lastrowid

        except Exception as e:
            # Driver errors and parameter formatting errors alike drop the record
            if connection is not None:
                try:
                    connection.rollback()
                except MySQLError:
                    # The insert error is what gets reported
                    pass
            raise SinkRejected(
                f"MySQL rejected insert into '{statement.table}': {e}",
                table=statement.table
            ) from e

        finally:
            if cursor is not None:
                cursor.close()
            self._return_connection(connection)


class PostgreSQLSink(StorageSink):
    """PostgreSQL sink on a single connection"""

    dialect = 'postgresql'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize PostgreSQL sink

        Args:
            config: Database configuration dict
        """
        self.config = config
        self._connection = None

    @property
    def connection(self):
        return self._connection

    def connect(self):
        """Establish PostgreSQL connection"""
        try:
            self._connection = psycopg2.connect(
                host=self.config['host'],
                port=self.config.get('port', DEFAULT_PORTS['postgresql']),
                database=self.config['database'],
                user=self.config['user'],
                password=self.config.get('password') or '',
                connect_timeout=self.config.get('connection_timeout', 30)
            )
        except psycopg2.Error as e:
            raise SinkUnavailable(f"Failed to connect to PostgreSQL: {e}") from e
        self._connection.autocommit = False

    def disconnect(self):
        """Close PostgreSQL connection"""
        if self._connection:
            self._connection.close()
            self._connection = None

    def is_connected(self) -> bool:
        """Check if PostgreSQL is connected"""
        return self._connection is not None and self._connection.closed == 0

    def execute(self, statement: InsertStatement):
        """Insert one record, reopening the connection first if it was closed"""
        if not self.is_connected():
            try:
                self.connect()
            except SinkUnavailable as e:
                raise SinkRejected(str(e), table=statement.table) from e

        try:
            with self._connection.cursor() as cursor:
                cursor.execute(statement.sql, statement.params)
            self._connection.commit()

        except Exception as e:
            if not self._connection.closed:
                try:
                    self._connection.rollback()
                except psycopg2.Error:
                    # The insert error is what gets reported
                    pass
            raise SinkRejected(
                f"PostgreSQL rejected insert into '{statement.table}': {e}",
                table=statement.table
            ) from e


def create_sink(config: Dict[str, Any], connect_retries: int = 3, retry_delay: float = 2.0) -> StorageSink:
    """
    Factory function to create and connect the configured sink

    Args:
        config: Target database configuration ('type' is 'mysql' or 'postgresql')
        connect_retries: Connection attempts before giving up
        retry_delay: Seconds between attempts

    Returns:
        Connected StorageSink instance
    """
    sinks = {
        'mysql': MySQLSink,
        'postgresql': PostgreSQLSink,
    }

    db_type = config.get('type')
    if db_type not in sinks:
        raise ValueError(f"Unsupported database type: {db_type}")

    sink = sinks[db_type](config)

    attempt = 1
    while True:
        try:
            sink.connect()
            return sink
        except SinkUnavailable:
            if attempt >= connect_retries:
                raise
            attempt += 1
            time.sleep(retry_delay)
