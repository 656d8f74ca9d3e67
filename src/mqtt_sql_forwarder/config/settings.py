"""
Configuration loader and validator
Loads from YAML files and environment variables
"""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
from dotenv import load_dotenv

from .errors import ConfigurationError
from ..core.destination import DestinationMapping
from ..database.connector import parse_database_url
from ..mqtt.client import LastWill, SessionConfig
from ..mqtt.topics import SubscribeOptions, TopicRegistry, TopicSubscription


VALID_DB_TYPES = ['mysql', 'postgresql']


class Settings:
    """
    Application settings manager
    Combines configuration from YAML and environment variables
    """

    def __init__(self, config_file: str = "config/config.yaml"):
        """
        Initialize settings

        Args:
            config_file: Path to YAML configuration file
        """
        load_dotenv()

        self.config_file = Path(config_file)
        self.config = self._load_config()

        self.config = self._resolve_env_vars(self.config)

        self._validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if not self.config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self.config_file}"
            )

        try:
            with open(self.config_file, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_file}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_file}")
        return config

    def _resolve_env_vars(self, config: Any) -> Any:
        """
        Recursively resolve environment variables in config
        Replaces ${VAR_NAME} with environment variable value
        """
        if isinstance(config, dict):
            return {
                key: self._resolve_env_vars(value)
                for key, value in config.items()
            }
        elif isinstance(config, list):
            return [self._resolve_env_vars(item) for item in config]
        elif isinstance(config, str):
            if config.startswith('${') and config.endswith('}'):
                env_var = config[2:-1]
                value = os.getenv(env_var)
                if value is None:
                    raise ConfigurationError(
                        f"Environment variable not set: {env_var}"
                    )
                return value
            return config
        else:
            return config

    def _validate_config(self):
        """Validate required configuration fields"""
        required_sections = ['mqtt', 'target_database']

        for section in required_sections:
            if not isinstance(self.config.get(section), dict):
                raise ConfigurationError(
                    f"Required configuration section missing: {section}"
                )

        for key in ['broker_uri', 'client_id', 'subscriptions']:
            if not self.config['mqtt'].get(key):
                raise ConfigurationError(f"Required setting missing: mqtt.{key}")

        target = self.get_target_db_config()
        if target.get('type') not in VALID_DB_TYPES:
            raise ConfigurationError(
                f"Invalid target database type: {target.get('type')}. "
                f"Must be one of {VALID_DB_TYPES}"
            )
        for key in ['host', 'database', 'user']:
            if not target.get(key):
                raise ConfigurationError(f"Required setting missing: target_database.{key}")

        # Build once so a bad subscription list fails at startup
        self.build_session_config()
        self.build_destination_mapping()
        self.get_dead_letter_config()

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation

        Args:
            key_path: Path to config value (e.g., 'mqtt.client_id')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key_path.split('.')
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_mqtt_config(self) -> Dict[str, Any]:
        """Get MQTT configuration"""
        return self.config['mqtt']

    def get_target_db_config(self) -> Dict[str, Any]:
        """
        Get target database configuration
        A url (or DATABASE_URL) fills in fields not set explicitly;
        a missing password falls back to DB_PASSWORD
        """
        target = dict(self.config['target_database'])

        url = target.get('url') or os.getenv('DATABASE_URL')
        if url:
            try:
                from_url = parse_database_url(url)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
            for key, value in from_url.items():
                if target.get(key) is None and value is not None:
                    target[key] = value

        if target.get('password') is None:
            target['password'] = os.getenv('DB_PASSWORD', '')

        return target

    def get_dead_letter_config(self) -> Dict[str, Any]:
        """Get dead letter queue configuration"""
        dead_letter = self.config.get('dead_letter') or {}
        try:
            return {
                'enabled': bool(dead_letter.get('enabled', False)),
                'storage_dir': dead_letter.get('storage_dir', 'data/dlq'),
                'max_messages': int(dead_letter.get('max_messages', 10000)),
                'retention_days': int(dead_letter.get('retention_days', 7)),
            }
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid dead_letter setting: {e}") from e

    def get_subscriptions(self) -> List[TopicSubscription]:
        """
        Read the subscription list in configured order
        Accepts a list of {topic, qos, options} entries or a topic -> {qos, options} mapping
        """
        raw = self.get_mqtt_config()['subscriptions']

        if isinstance(raw, dict):
            entries = [
                dict(settings or {}, topic=topic)
                for topic, settings in raw.items()
            ]
        elif isinstance(raw, list):
            entries = raw
        else:
            raise ConfigurationError("mqtt.subscriptions must be a list or a mapping")

        subscriptions = []
        for entry in entries:
            if not isinstance(entry, dict) or 'topic' not in entry:
                raise ConfigurationError(f"Invalid subscription entry: {entry!r}")
            subscriptions.append(TopicSubscription(
                topic=entry['topic'],
                qos=entry.get('qos', 1),
                options=SubscribeOptions.from_dict(entry.get('options'))
            ))
        return subscriptions

    def _get_last_will(self) -> Optional[LastWill]:
        will = self.get_mqtt_config().get('last_will')
        if not will:
            return None
        if not isinstance(will, dict) or not will.get('topic'):
            raise ConfigurationError("mqtt.last_will needs at least a topic")
        return LastWill(
            topic=will['topic'],
            payload=str(will.get('payload', '')),
            qos=will.get('qos', 1),
            retain=bool(will.get('retain', False))
        )

    def build_session_config(self) -> SessionConfig:
        """Build the immutable broker session configuration"""
        mqtt_config = self.get_mqtt_config()
        registry = TopicRegistry.from_subscriptions(self.get_subscriptions())

        try:
            return SessionConfig(
                broker_uri=mqtt_config['broker_uri'],
                client_id=str(mqtt_config['client_id']),
                registry=registry,
                keep_alive=int(mqtt_config.get('keep_alive', 5)),
                clean_start=bool(mqtt_config.get('clean_start', False)),
                session_expiry_interval=int(mqtt_config.get('session_expiry_interval', 60)),
                last_will=self._get_last_will(),
                username=mqtt_config.get('username'),
                password=mqtt_config.get('password'),
                connect_timeout=float(mqtt_config.get('connect_timeout', 10)),
                retry_interval=float(mqtt_config.get('retry_interval', 1)),
                reconnect_notice_seconds=float(mqtt_config.get('reconnect_notice_seconds', 2)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid mqtt setting: {e}") from e

    def build_destination_mapping(self) -> DestinationMapping:
        """Build the topic -> table mapping"""
        mapping = self.config['target_database'].get('topic_table_map') or {}
        if not isinstance(mapping, dict):
            raise ConfigurationError("target_database.topic_table_map must be a mapping")
        return DestinationMapping(mapping)

    def __repr__(self) -> str:
        """String representation (hide sensitive data)"""
        safe_config = copy.deepcopy(self.config)

        for section in ['mqtt', 'target_database']:
            if isinstance(safe_config.get(section), dict) and 'password' in safe_config[section]:
                safe_config[section]['password'] = '***'

        return f"Settings({safe_config})"


def create_default_config(output_path: str = "config/config.yaml"):
    """
    Create a default configuration file

    Args:
        output_path: Path where to save the config file
    """
    default_config = """
application:
  log_level: "INFO"
  log_dir: "logs"
  enable_metrics: true
  metrics_port: 9090

mqtt:
  broker_uri: "mqtt://localhost:1883"
  client_id: "mqtt_sql_forwarder"
  keep_alive: 5
  clean_start: false
  session_expiry_interval: 60
  connect_timeout: 10
  retry_interval: 1
  reconnect_notice_seconds: 2
  last_will:
    topic: "forwarder/lwt"
    payload: "[LWT] forwarder lost connection"
    qos: 1
  subscriptions:
    - topic: "sensors/temp"
      qos: 1
      options:
        no_local: false
        retain_as_published: true
        retain_handling: 0

target_database:
  type: "mysql"
  host: "localhost"
  port: 3306
  database: "telemetry"
  user: "forwarder"
  password: "${DB_PASSWORD}"
  pool_size: 5
  topic_table_map:
    "sensors/temp": "temp_readings"

dead_letter:
  enabled: false
  storage_dir: "data/dlq"
  max_messages: 10000
  retention_days: 7
"""

    output_file = Path(output_path)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    with open(output_file, 'w') as f:
        f.write(default_config.strip() + "\n")
