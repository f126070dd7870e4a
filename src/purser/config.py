"""Runtime configuration, read from ``PURSER_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from .budget import DEFAULT_LIMITS, BudgetLimits
from .money import parse_amount


def default_home() -> Path:
    return Path.home() / ".purser"


def default_secrets_dir() -> Path:
    return Path.home() / ".purser-secrets"


@dataclass
class PurserConfig:
    home: Path = field(default_factory=default_home)
    secrets_dir: Path = field(default_factory=default_secrets_dir)
    default_cost: int = 10_000
    payment_timeout: float = 30.0
    pending_timeout: float = 300.0
    max_step_attempts: int = 3
    network: str = "eip155:84532"
    default_limits: BudgetLimits = field(default_factory=lambda: replace(DEFAULT_LIMITS))

    @property
    def db_path(self) -> Path:
        return self.home / "purser.db"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.secrets_dir / "audit_hmac.key"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PurserConfig":
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("PURSER_HOME"):
            config.home = Path(env["PURSER_HOME"]).expanduser()
            config.secrets_dir = config.home / "secrets"
        if env.get("PURSER_DEFAULT_COST"):
            config.default_cost = parse_amount(env["PURSER_DEFAULT_COST"], "PURSER_DEFAULT_COST")
        if env.get("PURSER_PAYMENT_TIMEOUT"):
            config.payment_timeout = _positive_float(env, "PURSER_PAYMENT_TIMEOUT")
        if env.get("PURSER_PENDING_TIMEOUT"):
            config.pending_timeout = _positive_float(env, "PURSER_PENDING_TIMEOUT")
        if env.get("PURSER_MAX_STEP_ATTEMPTS"):
            config.max_step_attempts = int(env["PURSER_MAX_STEP_ATTEMPTS"])
            if config.max_step_attempts < 1:
                raise ValueError("PURSER_MAX_STEP_ATTEMPTS must be at least 1")
        if env.get("PURSER_NETWORK"):
            config.network = env["PURSER_NETWORK"]
        return config


def _positive_float(env: Mapping[str, str], name: str) -> float:
    value = float(env[name])
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {env[name]}")
    return value
