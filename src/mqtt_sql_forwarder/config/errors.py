"""Fatal configuration errors"""

from ..utils.logger import SystemFailure


class ConfigurationError(Exception):
    """Malformed or missing configuration; fatal at startup, never retried"""

    system_failure = SystemFailure.CONFIGURATION_INVALID
