"""
Configuration Management System

Hierarchical configuration loading:
1. Environment variables (highest priority)
2. config.yaml file
3. Model defaults
"""

import os
from typing import Any, Callable, Dict, Optional, Tuple
from pathlib import Path
from decimal import Decimal
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .types import ConfigurationError


def _validate_address(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not v.startswith('0x') or len(v) != 42:
        raise ValueError(f"Invalid Ethereum address: {v}")
    return v


class RPCConfig(BaseModel):
    """RPC provider configuration"""
    primary_http: str = Field(default="http://localhost:8545", description="Primary HTTP RPC endpoint")
    primary_ws: str = Field(default="ws://localhost:8545", description="Primary WebSocket RPC endpoint")
    backup_http: Optional[str] = Field(default=None, description="Backup HTTP RPC endpoint")
    backup_ws: Optional[str] = Field(default=None, description="Backup WebSocket RPC endpoint")
    request_timeout_seconds: int = Field(default=10)


class ContractsConfig(BaseModel):
    """Lending ledger contract addresses"""
    lending_protocol: str = Field(..., description="Lending protocol contract")
    price_oracle: str = Field(..., description="Price oracle contract")
    default_market: Optional[str] = Field(default=None, description="Market token scanned by default")
    staking_pool: Optional[str] = Field(default=None, description="Staking pool contract, needed for reward reads")

    @field_validator('lending_protocol', 'price_oracle', 'default_market', 'staking_pool')
    @classmethod
    def validate_address(cls, v):
        return _validate_address(v)


class DatabaseConfig(BaseModel):
    """Database configuration"""
    url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides the fields below")
    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    database: str = Field(default="ledger_mirror")
    user: str = Field(default="ledger_mirror")
    password: str = Field(default="")
    pool_size: int = Field(default=20)
    max_overflow: int = Field(default=10)
    pool_timeout_seconds: int = Field(default=10)
    statement_timeout_ms: int = Field(default=5000)

    @property
    def connection_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RedisConfig(BaseModel):
    """Redis cache configuration"""
    enabled: bool = Field(default=True)
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[str] = Field(default=None)
    db: int = Field(default=0)
    ttl_seconds: int = Field(default=60)


class IndexerConfig(BaseModel):
    """Event pipeline configuration"""
    start_block: int = Field(default=0, description="First block considered on a fresh store")
    debounce_ms: int = Field(default=300, description="Coalescing window per transaction")
    backfill_chunk_blocks: int = Field(default=2000)
    committed_cache_size: int = Field(default=10000)
    market_sync_interval_seconds: int = Field(default=60)


class RiskConfig(BaseModel):
    """Risk derivation constants"""
    health_factor_decimals: int = Field(default=4, description="Fixed-point scale of the ledger health factor")
    price_decimals: int = Field(default=18)
    health_factor_ceiling: Decimal = Field(default=Decimal("1000"), description="Display clamp; no-debt sentinel")
    health_factor_floor: Decimal = Field(default=Decimal("1.0"), description="At or below: 100% risk")
    liquidation_threshold: Decimal = Field(default=Decimal("1.0"), description="Candidates have hf strictly below")
    fallback_price: int = Field(default=10**18, description="Price used when the oracle read fails")
    close_factor_bps: int = Field(default=5000)
    collateral_factor_bps: int = Field(default=7500, description="Borrow limit as a share of the deposit")

    @field_validator('health_factor_ceiling')
    @classmethod
    def validate_ceiling(cls, v):
        if v <= 1:
            raise ValueError("Health factor ceiling must exceed 1")
        return v


class RetryConfig(BaseModel):
    """Ledger read retry policy"""
    attempts: int = Field(default=3, ge=1)
    base_backoff_seconds: float = Field(default=0.5)
    max_backoff_seconds: float = Field(default=8.0)


class ScannerConfig(BaseModel):
    """Liquidation scanner configuration"""
    max_concurrency: int = Field(default=8, ge=1)
    lookback_blocks: Optional[int] = Field(default=None, description="Bound discovery to the last N blocks")
    incremental_index: bool = Field(default=True)


class EstimatorConfig(BaseModel):
    """Real-time estimator configuration"""
    tick_interval_seconds: float = Field(default=1.0)
    accrual_interval_seconds: int = Field(default=300)
    intervals_per_year: int = Field(default=105120)
    reward_rate_bps: int = Field(default=1000, description="Annual staking reward rate on the staked amount")


class MonitoringConfig(BaseModel):
    """Monitoring and logging configuration"""
    api_port: int = Field(default=8000)
    log_dir: str = Field(default="logs")
    log_level: str = Field(default="INFO")
    cloudwatch_enabled: bool = Field(default=False)
    cloudwatch_region: str = Field(default="us-east-1")
    cloudwatch_namespace: str = Field(default="LedgerMirror")
    metrics_export_interval_seconds: int = Field(default=60)


class ReportingConfig(BaseModel):
    """Derived read API configuration"""
    gas_sample_limit: int = Field(default=50)
    material_savings_percent: Decimal = Field(default=Decimal("50"))


class MirrorConfig(BaseModel):
    """Main configuration model"""
    # Network
    chain_id: int = Field(default=31337)
    network_name: str = Field(default="localhost")

    # Components
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    contracts: ContractsConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    estimator: EstimatorConfig = Field(default_factory=EstimatorConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)


# Environment variable -> (config section or None for top level, key, converter)
ENV_OVERRIDES: Dict[str, Tuple[Optional[str], str, Callable[[str], Any]]] = {
    'CHAIN_ID': (None, 'chain_id', int),
    'DATABASE_URL': ('database', 'url', str),
    'DB_HOST': ('database', 'host', str),
    'DB_USER': ('database', 'user', str),
    'DB_PASSWORD': ('database', 'password', str),
    'REDIS_HOST': ('redis', 'host', str),
    'REDIS_PASSWORD': ('redis', 'password', str),
    'RPC_PRIMARY_HTTP': ('rpc', 'primary_http', str),
    'RPC_PRIMARY_WS': ('rpc', 'primary_ws', str),
    'LENDING_PROTOCOL_ADDRESS': ('contracts', 'lending_protocol', str),
    'PRICE_ORACLE_ADDRESS': ('contracts', 'price_oracle', str),
    'STAKING_POOL_ADDRESS': ('contracts', 'staking_pool', str),
    'LOG_LEVEL': ('monitoring', 'log_level', str),
}


class ConfigLoader:
    """Configuration loader with hierarchical loading"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path(os.getenv('LEDGER_MIRROR_CONFIG', 'config.yaml'))
        self._config: Optional[MirrorConfig] = None

    def load(self) -> MirrorConfig:
        """Load configuration from all sources"""
        config_data = self._load_yaml()
        config_data = self._apply_env_overrides(config_data)

        try:
            self._config = MirrorConfig(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_path}: {e}") from e

        return self._config

    def _load_yaml(self) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Overlay every set variable of ENV_OVERRIDES onto the file data"""
        for variable, (section, key, convert) in ENV_OVERRIDES.items():
            value = os.getenv(variable)
            if not value:
                continue
            target = config_data if section is None else config_data.setdefault(section, {})
            try:
                target[key] = convert(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid {variable}={value!r}: {e}") from e
        return config_data

    @property
    def config(self) -> MirrorConfig:
        """Get loaded configuration"""
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config


# Global config instance
_config_loader: Optional[ConfigLoader] = None


def get_config() -> MirrorConfig:
    """Get global configuration instance"""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
        _config_loader.load()
    return _config_loader.config


def init_config(config_path: Optional[Path] = None) -> MirrorConfig:
    """Initialize configuration with custom path"""
    global _config_loader
    _config_loader = ConfigLoader(config_path)
    return _config_loader.load()
