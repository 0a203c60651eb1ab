"""Configuration management for the Agora connector."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List

# Constants
DEFAULT_ENDPOINT_URL = "https://api.agora.io"
DEFAULT_REGION = "global"
VALID_REGIONS = ["global", "na", "eu", "ap", "cn"]
STREAM_NAMES = ["usage", "call_quality", "recordings", "channels", "events"]
REQUIRED_CONFIGS = ["app_id", "customer_id", "customer_secret", "start_date"]
DATE_FORMAT = "%Y-%m-%d"

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1


class ConfigurationError(ValueError):
    """Raised when the connector configuration is missing or malformed."""


@dataclass
class AgoraConfig:
    """Configuration class for the Agora connector."""

    app_id: str
    customer_id: str
    customer_secret: str
    start_date: str
    endpoint_url: str = DEFAULT_ENDPOINT_URL
    region: str = DEFAULT_REGION
    streams: List[str] = field(default_factory=lambda: list(STREAM_NAMES))
    request_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS


def _parse_int(configuration: dict, key: str, default: int, minimum: int, maximum: int) -> int:
    value = configuration.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        parsed = int(str(value).strip())
    except (ValueError, TypeError):
        raise ConfigurationError(f"{key} must be a valid integer between {minimum} and {maximum}")
    if parsed < minimum or parsed > maximum:
        raise ConfigurationError(f"{key} must be an integer between {minimum} and {maximum}")
    return parsed


def _parse_streams(value: Any) -> List[str]:
    """
    Accept either a JSON list or a comma separated string of stream names.
    An empty selection means every stream.
    """
    if value is None:
        return list(STREAM_NAMES)
    if isinstance(value, str):
        names = [name.strip() for name in value.split(",") if name.strip()]
    elif isinstance(value, (list, tuple)):
        names = [str(name).strip() for name in value if str(name).strip()]
    else:
        raise ConfigurationError("streams must be a list or a comma separated string")

    if not names:
        return list(STREAM_NAMES)

    unknown = [name for name in names if name not in STREAM_NAMES]
    if unknown:
        raise ConfigurationError(f"Unknown stream(s) {unknown}. Must be a subset of: {STREAM_NAMES}")

    # Keep the canonical sync order regardless of how the selection was written
    return [name for name in STREAM_NAMES if name in names]


def validate_start_date(start_date: str) -> str:
    """
    Check that start_date is a real calendar date in YYYY-MM-DD format.
    Args:
        start_date: the configured start date.
    Returns:
        The start date, unchanged.
    Raises:
        ConfigurationError: if the value is not a valid date.
    """
    try:
        parsed = datetime.strptime(start_date, DATE_FORMAT)
    except (ValueError, TypeError):
        raise ConfigurationError("Invalid start_date format. Expected format: YYYY-MM-DD")
    # strptime accepts single digit months and days, the API does not
    if parsed.strftime(DATE_FORMAT) != start_date:
        raise ConfigurationError("Invalid start_date format. Expected format: YYYY-MM-DD")
    return start_date


def parse_configuration(configuration: dict) -> AgoraConfig:
    """
    Parse and validate the configuration dictionary.
    Fivetran delivers every configuration value as a string, so numeric and list values are coerced here.
    Args:
        configuration: a dictionary that holds the configuration settings for the connector.
    Returns:
        A validated AgoraConfig.
    Raises:
        ConfigurationError: if any required configuration parameter is missing or invalid.
    """
    if not isinstance(configuration, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    for key in REQUIRED_CONFIGS:
        if not str(configuration.get(key) or "").strip():
            raise ConfigurationError(f"Missing required configuration field: {key}")

    endpoint_url = str(configuration.get("endpoint_url") or DEFAULT_ENDPOINT_URL).strip().rstrip("/")
    if not endpoint_url.startswith(("http://", "https://")):
        raise ConfigurationError("endpoint_url must start with http:// or https://")

    region = str(configuration.get("region") or DEFAULT_REGION).strip().lower()
    if region not in VALID_REGIONS:
        raise ConfigurationError(f"Invalid region. Must be one of: {', '.join(VALID_REGIONS)}")

    return AgoraConfig(
        app_id=str(configuration["app_id"]).strip(),
        customer_id=str(configuration["customer_id"]).strip(),
        customer_secret=str(configuration["customer_secret"]).strip(),
        start_date=validate_start_date(str(configuration["start_date"]).strip()),
        endpoint_url=endpoint_url,
        region=region,
        streams=_parse_streams(configuration.get("streams")),
        request_timeout_seconds=_parse_int(
            configuration, "request_timeout_seconds", DEFAULT_TIMEOUT_SECONDS, 1, 300
        ),
        retry_attempts=_parse_int(configuration, "retry_attempts", DEFAULT_RETRY_ATTEMPTS, 0, 10),
        retry_delay_seconds=_parse_int(
            configuration, "retry_delay_seconds", DEFAULT_RETRY_DELAY_SECONDS, 0, 60
        ),
    )
