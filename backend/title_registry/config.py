"""Configuration management for the title registry."""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass
class RegistryConfig:
    """Tunables for the lifecycle, sale and settlement services."""

    transaction_fee: float = 300.0
    contract_number_prefix: str = "CON"
    contract_number_max_retries: int = 5
    payment_link_template: str = "/paymentPage?transactionId={transaction_id}"
    temp_national_id_prefix: str = "TEMP-"
    notification_max_attempts: int = 5
    notification_retry_delay_seconds: int = 60
    notification_dispatch_interval: float = 5.0
    notification_batch_size: int = 100
    inactive_user_days: int = 30
    admin_user_ids: List[str] = field(default_factory=list)
    activation_webhook_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        """Build a config from environment variables, falling back to defaults."""
        admin_ids: Optional[str] = os.getenv("ADMIN_USER_IDS")
        return cls(
            transaction_fee=_env_float("TRANSACTION_FEE", 300.0),
            contract_number_prefix=os.getenv("CONTRACT_NUMBER_PREFIX", "CON"),
            contract_number_max_retries=_env_int("CONTRACT_NUMBER_MAX_RETRIES", 5),
            payment_link_template=os.getenv(
                "PAYMENT_LINK_TEMPLATE", "/paymentPage?transactionId={transaction_id}"
            ),
            notification_max_attempts=_env_int("NOTIFICATION_MAX_ATTEMPTS", 5),
            notification_retry_delay_seconds=_env_int("NOTIFICATION_RETRY_DELAY_SECONDS", 60),
            notification_dispatch_interval=_env_float("NOTIFICATION_DISPATCH_INTERVAL", 5.0),
            inactive_user_days=_env_int("INACTIVE_USER_DAYS", 30),
            admin_user_ids=[a.strip() for a in admin_ids.split(",") if a.strip()] if admin_ids else [],
            activation_webhook_url=os.getenv("ACTIVATION_WEBHOOK_URL") or None,
        )
