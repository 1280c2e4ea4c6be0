"""Runtime configuration for the rewards ledger."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RewardsSettings(BaseSettings):
    """Immutable ledger parameters, read from ``REWARDS_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Bonuses (minor currency unit)
    join_bonus: int = Field(default=10, ge=0)
    referral_bonus: int = Field(default=5, gt=0)

    # Withdrawals
    min_withdraw: int = Field(default=50, gt=0)
    max_withdraw: int = Field(default=500, gt=0)
    withdraw_amount: int = Field(default=50, gt=0)  # fixed unit debited per request
    daily_withdraw_limit: int = Field(default=1, ge=1)

    # Policy switches
    require_verified_device: bool = True
    surface_unknown_referrer: bool = False
    refund_on_reject: bool = False
    flag_shared_device_referrals: bool = True

    # Device verification
    challenge_ttl_seconds: int = Field(default=600, gt=0)
    challenge_code_length: int = Field(default=6, ge=4, le=12)

    # Admin surface
    admin_secret: Optional[SecretStr] = None

    # Runtime
    database_url: Optional[str] = None  # None keeps everything in memory
    lock_stripes: int = Field(default=64, ge=1)
    event_queue_size: int = Field(default=1000, ge=1)
    quota_reset_interval_seconds: float = Field(default=3600.0, gt=0)

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    @model_validator(mode="after")
    def check_withdraw_bounds(self) -> "RewardsSettings":
        if self.min_withdraw > self.max_withdraw:
            raise ValueError("min_withdraw must not exceed max_withdraw")
        if not self.min_withdraw <= self.withdraw_amount <= self.max_withdraw:
            raise ValueError("withdraw_amount must lie between min_withdraw and max_withdraw")
        return self


@lru_cache
def get_settings() -> RewardsSettings:
    return RewardsSettings()
