"""
Configuration validation and management for the payout router.

This module provides configuration validation, environment variable management,
and configuration loading with proper error handling and defaults.
"""

import os
from typing import Dict, Optional, List
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from dotenv import load_dotenv
from app.core.exceptions import ConfigurationError
import logging

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    url: str
    max_pool_size: int = 10
    min_pool_size: int = 2
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 10000
    socket_timeout_ms: int = 45000


@dataclass
class SecurityConfig:
    """Security configuration settings"""
    private_token: str
    monitoring_api_key: Optional[str] = None


@dataclass
class PayoutConfig:
    """Payout lifecycle settings"""
    min_amount: Decimal = Decimal("100")
    max_amount: Decimal = Decimal("1000000")
    currency: str = "RUB"
    upload_dir: str = "./uploads"
    callback_timeout_seconds: float = 10.0
    short_id_length: int = 11
    short_id_ttl_seconds: int = 86400
    short_id_max_entries: int = 10000
    screenshot_max_size: int = 10 * 1024 * 1024
    allowed_screenshot_types: List[str] = field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp"]
    )


@dataclass
class RateConfig:
    """Exchange rate aggregation settings"""
    from_currency: str = "USDT"
    to_currency: str = "RUB"
    update_interval_seconds: int = 300
    cache_ttl_seconds: int = 240
    http_timeout_seconds: float = 10.0


@dataclass
class BotConfig:
    """Operator bot settings (bot is disabled without a token)"""
    token: Optional[str] = None
    admin_telegram_id: Optional[int] = None


@dataclass
class RateLimitConfig:
    """Rate limiting configuration settings"""
    payout_rate_limit: str = "60/minute"
    api_rate_limit: str = "30/minute"
    monitoring_rate_limit: str = "10/minute"


@dataclass
class LoggingConfig:
    """Logging configuration settings"""
    level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration"""
    database: DatabaseConfig
    security: SecurityConfig
    payout: PayoutConfig
    rate: RateConfig
    bot: BotConfig
    rate_limit: RateLimitConfig
    logging: LoggingConfig
    environment: str = "development"
    debug: bool = False


class ConfigValidator:
    """Validates and loads application configuration"""

    REQUIRED_ENV_VARS = {
        "MONGO_URL": "mongodb://localhost:27017/payouts",
        "PRIVATE_TOKEN": "your-private-token-here",
    }

    OPTIONAL_ENV_VARS = {
        "ENVIRONMENT": "development",
        "DEBUG": "false",
        "LOG_LEVEL": "INFO",
        "MONITORING_API_KEY": None,
        "MONGO_MAX_POOL_SIZE": "10",
        "MONGO_MIN_POOL_SIZE": "2",
        "MONGO_SERVER_SELECTION_TIMEOUT_MS": "5000",
        "MONGO_CONNECT_TIMEOUT_MS": "10000",
        "MONGO_SOCKET_TIMEOUT_MS": "45000",
        "TELEGRAM_BOT_TOKEN": None,
        "ADMIN_TELEGRAM_ID": None,
        "UPLOAD_DIR": "./uploads",
        "MIN_PAYOUT_AMOUNT": "100",
        "MAX_PAYOUT_AMOUNT": "1000000",
        "PAYOUT_CURRENCY": "RUB",
        "CALLBACK_TIMEOUT_SECONDS": "10",
        "SHORT_ID_LENGTH": "11",
        "SHORT_ID_TTL_SECONDS": "86400",
        "SHORT_ID_MAX_ENTRIES": "10000",
        "SCREENSHOT_MAX_SIZE": str(10 * 1024 * 1024),
        "ALLOWED_SCREENSHOT_TYPES": "image/jpeg,image/png,image/webp",
        "RATE_FROM_CURRENCY": "USDT",
        "RATE_TO_CURRENCY": "RUB",
        "RATE_UPDATE_INTERVAL_SECONDS": "300",
        "RATE_CACHE_TTL_SECONDS": "240",
        "HTTP_TIMEOUT_SECONDS": "10",
        "PAYOUT_RATE_LIMIT": "60/minute",
        "API_RATE_LIMIT": "30/minute",
        "MONITORING_RATE_LIMIT": "10/minute",
    }

    @classmethod
    def validate_environment(cls) -> Dict[str, Optional[str]]:
        """
        Validate all required and optional environment variables

        Returns:
            Dict containing all validated environment variables

        Raises:
            ConfigurationError: If validation fails
        """
        errors = []
        config = {}

        for var_name, default_value in cls.REQUIRED_ENV_VARS.items():
            value = os.getenv(var_name)
            if not value:
                errors.append(f"Required environment variable {var_name} is not set")
                config[var_name] = default_value
            else:
                config[var_name] = value

        for var_name, default_value in cls.OPTIONAL_ENV_VARS.items():
            config[var_name] = os.getenv(var_name, default_value)

        if errors:
            raise ConfigurationError(
                "Configuration validation failed: " + "; ".join(errors),
                config_key="environment_validation",
            )

        return config

    @classmethod
    def validate_mongo_url(cls, url: str) -> str:
        """Validate MongoDB URL format"""
        if not url.startswith(("mongodb://", "mongodb+srv://")):
            raise ConfigurationError(
                "Invalid MongoDB URL format",
                config_key="MONGO_URL",
                expected_value="mongodb://localhost:27017/payouts"
            )
        return url

    @classmethod
    def validate_rate_limit(cls, rate_limit: str) -> str:
        """Validate rate limit format (e.g., '10/minute')"""
        try:
            parts = rate_limit.split("/")
            if len(parts) != 2:
                raise ValueError()
            int(parts[0])
            if parts[1] not in ["second", "minute", "hour", "day"]:
                raise ValueError()
        except ValueError:
            raise ConfigurationError(
                "Invalid rate limit format",
                config_key="rate_limit",
                expected_value="10/minute"
            )
        return rate_limit

    @classmethod
    def validate_boolean(cls, value: str, default: bool = False) -> bool:
        """Validate boolean string values"""
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @classmethod
    def validate_integer(cls, value: str, default: int, min_val: int = None, max_val: int = None) -> int:
        """Validate integer values with optional bounds"""
        try:
            int_val = int(value)
            if min_val is not None and int_val < min_val:
                raise ValueError(f"Value must be >= {min_val}")
            if max_val is not None and int_val > max_val:
                raise ValueError(f"Value must be <= {max_val}")
            return int_val
        except (ValueError, TypeError):
            return default

    @classmethod
    def validate_float(cls, value: str, default: float, min_val: float = None) -> float:
        """Validate float values with an optional lower bound"""
        try:
            float_val = float(value)
            if min_val is not None and float_val < min_val:
                return default
            return float_val
        except (ValueError, TypeError):
            return default

    @classmethod
    def validate_amount_bounds(cls, min_value: str, max_value: str) -> tuple:
        """Validate payout amount bounds (positive, min <= max)"""
        try:
            min_amount = Decimal(min_value)
            max_amount = Decimal(max_value)
        except (InvalidOperation, TypeError):
            raise ConfigurationError(
                "Payout amount bounds must be numeric",
                config_key="MIN_PAYOUT_AMOUNT/MAX_PAYOUT_AMOUNT",
                expected_value="100 / 1000000",
            )

        if min_amount <= 0 or max_amount < min_amount:
            raise ConfigurationError(
                "Payout amount bounds must be positive with MIN <= MAX",
                config_key="MIN_PAYOUT_AMOUNT/MAX_PAYOUT_AMOUNT",
                expected_value="100 / 1000000",
            )
        return min_amount, max_amount

    @classmethod
    def validate_optional_int(cls, value: Optional[str], config_key: str) -> Optional[int]:
        """Parse an optional integer id (e.g. a Telegram user id)"""
        if value is None or value == "":
            return None
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(
                f"{config_key} must be an integer",
                config_key=config_key,
                expected_value="123456789",
            )

    @classmethod
    def load_config(cls) -> AppConfig:
        """
        Load and validate complete application configuration

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration validation fails
        """
        logger.info("Loading application configuration...")

        env_vars = cls.validate_environment()

        database_config = DatabaseConfig(
            url=cls.validate_mongo_url(env_vars["MONGO_URL"]),
            max_pool_size=cls.validate_integer(env_vars["MONGO_MAX_POOL_SIZE"], 10, 1, 100),
            min_pool_size=cls.validate_integer(env_vars["MONGO_MIN_POOL_SIZE"], 2, 1, 50),
            server_selection_timeout_ms=cls.validate_integer(env_vars["MONGO_SERVER_SELECTION_TIMEOUT_MS"], 5000, 1000, 30000),
            connect_timeout_ms=cls.validate_integer(env_vars["MONGO_CONNECT_TIMEOUT_MS"], 10000, 1000, 60000),
            socket_timeout_ms=cls.validate_integer(env_vars["MONGO_SOCKET_TIMEOUT_MS"], 45000, 1000, 120000),
        )

        security_config = SecurityConfig(
            private_token=env_vars["PRIVATE_TOKEN"],
            monitoring_api_key=env_vars.get("MONITORING_API_KEY"),
        )

        min_amount, max_amount = cls.validate_amount_bounds(
            env_vars["MIN_PAYOUT_AMOUNT"], env_vars["MAX_PAYOUT_AMOUNT"]
        )
        payout_config = PayoutConfig(
            min_amount=min_amount,
            max_amount=max_amount,
            currency=env_vars["PAYOUT_CURRENCY"],
            upload_dir=env_vars["UPLOAD_DIR"],
            callback_timeout_seconds=cls.validate_float(env_vars["CALLBACK_TIMEOUT_SECONDS"], 10.0, 0.1),
            short_id_length=cls.validate_integer(env_vars["SHORT_ID_LENGTH"], 11, 4, 40),
            short_id_ttl_seconds=cls.validate_integer(env_vars["SHORT_ID_TTL_SECONDS"], 86400, 60),
            short_id_max_entries=cls.validate_integer(env_vars["SHORT_ID_MAX_ENTRIES"], 10000, 1),
            screenshot_max_size=cls.validate_integer(env_vars["SCREENSHOT_MAX_SIZE"], 10 * 1024 * 1024, 1024),
            allowed_screenshot_types=[
                t.strip() for t in env_vars["ALLOWED_SCREENSHOT_TYPES"].split(",") if t.strip()
            ],
        )

        interval = cls.validate_integer(env_vars["RATE_UPDATE_INTERVAL_SECONDS"], 300, 10)
        cache_ttl = cls.validate_integer(env_vars["RATE_CACHE_TTL_SECONDS"], 240, 1)
        if cache_ttl >= interval:
            # Cache must expire before the next cycle writes a fresh value
            cache_ttl = max(1, interval - 1)
        rate_config = RateConfig(
            from_currency=env_vars["RATE_FROM_CURRENCY"],
            to_currency=env_vars["RATE_TO_CURRENCY"],
            update_interval_seconds=interval,
            cache_ttl_seconds=cache_ttl,
            http_timeout_seconds=cls.validate_float(env_vars["HTTP_TIMEOUT_SECONDS"], 10.0, 0.1),
        )

        bot_config = BotConfig(
            token=env_vars.get("TELEGRAM_BOT_TOKEN") or None,
            admin_telegram_id=cls.validate_optional_int(env_vars.get("ADMIN_TELEGRAM_ID"), "ADMIN_TELEGRAM_ID"),
        )

        rate_limit_config = RateLimitConfig(
            payout_rate_limit=cls.validate_rate_limit(env_vars["PAYOUT_RATE_LIMIT"]),
            api_rate_limit=cls.validate_rate_limit(env_vars["API_RATE_LIMIT"]),
            monitoring_rate_limit=cls.validate_rate_limit(env_vars["MONITORING_RATE_LIMIT"]),
        )

        logging_config = LoggingConfig(
            level=env_vars["LOG_LEVEL"],
        )

        app_config = AppConfig(
            database=database_config,
            security=security_config,
            payout=payout_config,
            rate=rate_config,
            bot=bot_config,
            rate_limit=rate_limit_config,
            logging=logging_config,
            environment=env_vars["ENVIRONMENT"],
            debug=cls.validate_boolean(env_vars["DEBUG"], False),
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"Environment: {app_config.environment}")
        logger.info(
            f"Payout bounds: {payout_config.min_amount}-{payout_config.max_amount} {payout_config.currency}"
        )
        logger.info(
            f"Rate pair: {rate_config.from_currency}/{rate_config.to_currency} "
            f"every {rate_config.update_interval_seconds}s"
        )
        logger.info(f"Operator bot: {'enabled' if bot_config.token else 'disabled'}")

        return app_config


_app_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the application configuration, loading it on first use

    Returns:
        AppConfig: Application configuration
    """
    global _app_config

    if _app_config is None:
        _app_config = ConfigValidator.load_config()

    return _app_config


def load_config() -> AppConfig:
    """
    Load and validate application configuration

    Returns:
        AppConfig: Loaded and validated configuration
    """
    global _app_config

    _app_config = ConfigValidator.load_config()
    return _app_config


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    global _app_config
    _app_config = None
