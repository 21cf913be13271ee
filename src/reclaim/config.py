"""
Reclaim engine configuration.

Values come from a YAML file with ``${VAR}`` placeholders resolved against the
environment (``.env`` is loaded first), then fall back to the defaults below.
"""

import os
import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from core.retry import RetryPolicy
from utils.logger import get_logger

logger = get_logger(__name__)

SOL_MINT = "So11111111111111111111111111111111111111112"
ORE_MINT = "oreoU2P8bN6jkk3jbaiVxYnG1dCXcYxwhwyK9jSybcp"
FEE_RECIPIENT = "3copeQ922WcSc5uqZbESgZ3TrfnEA8UEGHJ4EvkPAtHS"

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


@dataclass
class ReclaimConfig:
    """All tunables of the consolidation engine."""
    # Endpoints
    rpc_endpoint: str = "https://api.mainnet-beta.solana.com"
    quote_api_url: str = "https://lite-api.jup.ag/swap/v1"
    price_api_url: str = "https://lite-api.jup.ag/price/v3"
    token_list_url: str = "https://lite-api.jup.ag/tokens/v2/tag?query=verified"
    jupiter_api_key: Optional[str] = None

    # Assets
    target_mint: str = ORE_MINT
    target_decimals: int = 11
    base_mint: str = SOL_MINT
    fee_recipient: str = FEE_RECIPIENT

    # Packing and balance safety (lamports / bytes)
    fee_bps: int = 1000                          # 10% of reclaimed rent
    tx_size_limit: int = 1232
    safety_margin: int = 20
    min_balance_floor_lamports: int = 900_000    # slightly above wallet rent exemption
    tx_cost_estimate_lamports: int = 100_000
    rent_per_account_lamports: Optional[int] = 1_800_000  # None = ask the ledger once per scan

    # Dust thresholds
    min_dust_value_base: float = 0.001           # in base-asset units
    max_dust_value_fiat: float = 10.0
    fallback_base_price_usd: float = 100.0

    # Quote retry and pacing (seconds)
    quote_max_retries: int = 3
    quote_backoff_base: float = 0.5
    quote_backoff_multiplier: float = 2.0
    quote_group_size: int = 3
    quote_stagger: float = 0.3
    quote_group_pause: float = 1.0
    quote_request_gap: float = 0.2
    estimate_slippage_bps: int = 50
    swap_slippage_bps: int = 100

    # RPC read retry (seconds)
    rpc_max_retries: int = 3
    rpc_backoff_base: float = 0.5
    rpc_backoff_multiplier: float = 2.0

    # Execution pacing (seconds)
    batch_pause: float = 0.5
    swap_pause: float = 1.0
    settle_delay: float = 2.0
    confirm_timeout: float = 90.0

    include_token_2022: bool = True

    @property
    def effective_size_limit(self) -> int:
        return self.tx_size_limit - self.safety_margin

    @property
    def fee_rate(self) -> float:
        return self.fee_bps / 10_000

    def fee_for(self, reclaimed_lamports: int) -> int:
        """Fee in lamports, floored."""
        return reclaimed_lamports * self.fee_bps // 10_000

    def quote_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.quote_max_retries,
            base_delay=self.quote_backoff_base,
            multiplier=self.quote_backoff_multiplier,
        )

    def rpc_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.rpc_max_retries,
            base_delay=self.rpc_backoff_base,
            multiplier=self.rpc_backoff_multiplier,
        )

    def validate(self) -> "ReclaimConfig":
        if self.tx_size_limit <= 0:
            raise ValueError("tx_size_limit must be positive")
        if not 0 <= self.safety_margin < self.tx_size_limit:
            raise ValueError("safety_margin must be within [0, tx_size_limit)")
        if not 0 <= self.fee_bps <= 10_000:
            raise ValueError("fee_bps must be within [0, 10000]")
        if self.quote_group_size < 1:
            raise ValueError("quote_group_size must be >= 1")
        if self.quote_max_retries < 0 or self.rpc_max_retries < 0:
            raise ValueError("quote_max_retries and rpc_max_retries must be >= 0")
        if self.rent_per_account_lamports is not None and self.rent_per_account_lamports < 0:
            raise ValueError("rent_per_account_lamports must be >= 0")
        if self.min_balance_floor_lamports < 0 or self.tx_cost_estimate_lamports < 0:
            raise ValueError("balance floor and tx cost estimate must be >= 0")
        for name in ("quote_stagger", "quote_group_pause", "quote_request_gap",
                     "batch_pause", "swap_pause", "settle_delay"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReclaimConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"[CONFIG] Ignoring unknown keys: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known}).validate()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data.get("jupiter_api_key"):
            data["jupiter_api_key"] = "***"
        return data


def _resolve_placeholders(value: Any) -> Any:
    """Substitute ${VAR} in every string value of a parsed YAML document."""
    if isinstance(value, dict):
        return {k: _resolve_placeholders(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_placeholders(v) for v in value]
    if not isinstance(value, str):
        return value

    def replace(match: re.Match) -> str:
        name = match.group(1)
        resolved = os.environ.get(name)
        if resolved is None:
            raise ValueError(f"${{{name}}} is not set in the environment")
        return resolved
    return _ENV_PLACEHOLDER.sub(replace, value)


def load_config(path: str | Path | None = None, env_file: str | Path | None = None) -> ReclaimConfig:
    """Load configuration from YAML + environment.

    ``SOLANA_NODE_RPC_ENDPOINT`` and ``JUPITER_API_KEY`` fill in the endpoint
    and API key when the file does not set them.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    data: dict[str, Any] = {}
    if path:
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config {path} must be a mapping, got {type(loaded).__name__}")
        section = (loaded["reclaim"] or {}) if "reclaim" in loaded else loaded
        if not isinstance(section, dict):
            raise ValueError(f"Config {path}: 'reclaim' must be a mapping")
        data.update(_resolve_placeholders(section))

    if "rpc_endpoint" not in data and os.getenv("SOLANA_NODE_RPC_ENDPOINT"):
        data["rpc_endpoint"] = os.environ["SOLANA_NODE_RPC_ENDPOINT"]
    if "jupiter_api_key" not in data and os.getenv("JUPITER_API_KEY"):
        data["jupiter_api_key"] = os.environ["JUPITER_API_KEY"]

    return ReclaimConfig.from_dict(data)
