"""
Configuration for the refund settlement helper.

All settings have working defaults. Hosts can override them directly or
load them from ``X402R_*`` environment variables:

    X402R_READ_MAX_RETRIES        (default 5)
    X402R_READ_BACKOFF_BASE       (default 1.0 seconds)
    X402R_READ_BACKOFF_CAP        (default 16.0 seconds)
    X402R_DEPOSIT_MAX_RETRIES     (default 5)
    X402R_DEPOSIT_BACKOFF_STEP    (default 1.0 seconds)
    X402R_DEPLOY_POLL_ATTEMPTS    (default 5)
    X402R_DEPLOY_POLL_STEP        (default 1.0 seconds)
    X402R_CREATEX_ADDRESS         (default: standard deployment for the network)
    X402R_REGISTRATION_URL        (default https://app.402r.org)
    X402R_SETTLEMENT_TIMEOUT      (default: no limit)
"""

import os
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .address import normalize_address
from .errors import ConfigurationError, InvalidAddressError
from .retry import RetryPolicy

_FIELD_TO_ENV_KEY = {
    "read_max_retries": "X402R_READ_MAX_RETRIES",
    "read_backoff_base": "X402R_READ_BACKOFF_BASE",
    "read_backoff_cap": "X402R_READ_BACKOFF_CAP",
    "deposit_max_retries": "X402R_DEPOSIT_MAX_RETRIES",
    "deposit_backoff_step": "X402R_DEPOSIT_BACKOFF_STEP",
    "deploy_poll_attempts": "X402R_DEPLOY_POLL_ATTEMPTS",
    "deploy_poll_step": "X402R_DEPLOY_POLL_STEP",
    "createx_address": "X402R_CREATEX_ADDRESS",
    "registration_url": "X402R_REGISTRATION_URL",
    "timeout_seconds": "X402R_SETTLEMENT_TIMEOUT",
}


class RefundHelperConfig(BaseModel):
    """Tunables for one facilitator's refund settlements."""

    read_max_retries: int = Field(5, ge=0)
    read_backoff_base: float = Field(1.0, gt=0)
    read_backoff_cap: float = Field(16.0, gt=0)
    deposit_max_retries: int = Field(5, ge=0)
    deposit_backoff_step: float = Field(1.0, gt=0)
    deploy_poll_attempts: int = Field(5, ge=1)
    deploy_poll_step: float = Field(1.0, ge=0)
    createx_address: Optional[str] = None
    registration_url: str = "https://app.402r.org"
    timeout_seconds: Optional[float] = Field(None, gt=0)

    class Config:
        frozen = True

    @field_validator("createx_address")
    @classmethod
    def _checksum_createx(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return normalize_address(value, "createx_address")
        except InvalidAddressError as e:
            raise ValueError(str(e)) from e

    @property
    def read_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.read_max_retries,
            base_delay=self.read_backoff_base,
            max_delay=self.read_backoff_cap,
        )

    @property
    def deposit_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.deposit_max_retries,
            base_delay=self.deposit_backoff_step,
            max_delay=self.deposit_backoff_step * (self.deposit_max_retries + 1),
            exponential=False,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "RefundHelperConfig":
        """Build a config from ``X402R_*`` keys; absent keys keep defaults."""
        data: dict[str, Any] = {}
        for field_name, env_key in _FIELD_TO_ENV_KEY.items():
            raw = values.get(env_key)
            if raw is None or raw.strip() == "":
                continue
            data[field_name] = raw.strip()
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid refund helper configuration: {e}") from e

    @classmethod
    def from_env(
        cls,
        *,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "RefundHelperConfig":
        """
        Load configuration from the environment.

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Field values that take precedence over the environment

        Raises:
            ConfigurationError: If a value is invalid
        """
        base = cls.from_mapping(os.environ if environ is None else environ)
        unknown = set(overrides) - set(_FIELD_TO_ENV_KEY)
        if unknown:
            raise ConfigurationError(f"Unknown refund helper settings: {sorted(unknown)}")
        if not overrides:
            return base
        try:
            return cls.model_validate({**base.model_dump(), **overrides})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid refund helper configuration: {e}") from e
