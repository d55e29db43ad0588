"""
Runtime settings for KeyGate, read from the environment (and .env)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

from ..errors import ConfigurationError
from .database import DatabaseConfig, DEFAULT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


def parse_limit(value: str, name: str) -> Tuple[int, float]:
    """Parse ``"<max_requests>/<window_seconds>"`` into a tuple"""
    try:
        count, window = value.split('/', 1)
        parsed = int(count), float(window)
    except ValueError:
        raise ConfigurationError(f"{name} must look like '<requests>/<seconds>', got {value!r}")
    if parsed[0] <= 0 or parsed[1] <= 0:
        raise ConfigurationError(f"{name} values must be positive, got {value!r}")
    return parsed


@dataclass
class Settings:
    """
    Resolved configuration

    Attributes:
        admin_token: Operator credential; distinct from any access key
        master_key: Secret for sealing payload artifacts at rest; independent
            of admin_token so the operator credential can be rotated
        database: Connection settings for the key and payload stores
        public_url: Base URL baked into delivery stubs
        log_level: Root logging level name
        validate_limit: (requests, seconds) for the validation endpoint
        delivery_limit: (requests, seconds) for payload delivery
        operator_limit: (requests, seconds) for operator endpoints
        admin_max_failures: Failed operator logins tolerated per window
        admin_lockout_seconds: Length of the failed-login window
    """
    admin_token: str
    master_key: str
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    public_url: str = "http://localhost:8001"
    log_level: str = "INFO"
    validate_limit: Tuple[int, float] = (8, 15.0)
    delivery_limit: Tuple[int, float] = (20, 15.0)
    operator_limit: Tuple[int, float] = (60, 60.0)
    admin_max_failures: int = 10
    admin_lockout_seconds: float = 15 * 60.0

    def __post_init__(self):
        if not self.admin_token or not self.admin_token.strip():
            raise ConfigurationError("KEYGATE_ADMIN_TOKEN must be set")
        if not self.master_key or not self.master_key.strip():
            raise ConfigurationError("KEYGATE_MASTER_KEY must be set")
        self.public_url = self.public_url.rstrip('/')


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from environment variables

    Raises:
        ConfigurationError: If the operator credential or the sealing key is
            missing, or a value is malformed. Raised at startup, never per request.
    """
    load_dotenv(env_file)

    admin_token = os.getenv('KEYGATE_ADMIN_TOKEN')
    if not admin_token:
        raise ConfigurationError("KEYGATE_ADMIN_TOKEN environment variable is not set")

    master_key = os.getenv('KEYGATE_MASTER_KEY')
    if not master_key:
        raise ConfigurationError("KEYGATE_MASTER_KEY environment variable is not set")

    try:
        timeout = float(os.getenv('KEYGATE_DB_TIMEOUT', DEFAULT_TIMEOUT_SECONDS))
        database = DatabaseConfig(timeout=timeout)
    except ValueError as e:
        raise ConfigurationError(f"Invalid database configuration: {e}")

    return Settings(
        admin_token=admin_token,
        master_key=master_key,
        database=database,
        public_url=os.getenv('KEYGATE_PUBLIC_URL', 'http://localhost:8001'),
        log_level=os.getenv('KEYGATE_LOG_LEVEL', 'INFO').upper(),
        validate_limit=parse_limit(os.getenv('KEYGATE_VALIDATE_LIMIT', '8/15'), 'KEYGATE_VALIDATE_LIMIT'),
        delivery_limit=parse_limit(os.getenv('KEYGATE_DELIVERY_LIMIT', '20/15'), 'KEYGATE_DELIVERY_LIMIT'),
        operator_limit=parse_limit(os.getenv('KEYGATE_OPERATOR_LIMIT', '60/60'), 'KEYGATE_OPERATOR_LIMIT'),
    )
