"""
forksim Configuration Management

从环境变量和配置文件中读取配置，支持 .env 文件。
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """forksim 配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_reload: bool = Field(default=False, alias="API_RELOAD")

    # Anvil Configuration
    anvil_binary_path: str = Field(default="anvil", alias="ANVIL_BINARY_PATH")
    anvil_host: str = Field(default="127.0.0.1", alias="ANVIL_HOST")
    anvil_ready_attempts: int = Field(default=5, ge=1, alias="ANVIL_READY_ATTEMPTS")
    anvil_ready_interval: float = Field(default=0.5, gt=0, alias="ANVIL_READY_INTERVAL")
    anvil_stop_timeout: float = Field(default=5.0, gt=0, alias="ANVIL_STOP_TIMEOUT")

    # RPC / Simulation
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, alias="RPC_TIMEOUT_SECONDS")
    simulation_timeout_seconds: float = Field(default=120.0, gt=0, alias="SIMULATION_TIMEOUT_SECONDS")
    probe_concurrency: int = Field(default=8, ge=1, alias="PROBE_CONCURRENCY")

    # Call data limits
    max_tx_size_bytes: int = Field(default=131072, alias="MAX_TX_SIZE_BYTES")
    calldata_warn_hex_chars: int = Field(default=4000, alias="CALLDATA_WARN_HEX_CHARS")

    # Pricing
    cmc_pro_api_key: Optional[str] = Field(default=None, alias="CMC_PRO_API_KEY")
    cmc_base_url: str = Field(
        default="https://pro-api.coinmarketcap.com",
        alias="CMC_BASE_URL",
    )
    price_timeout_seconds: float = Field(default=10.0, gt=0, alias="PRICE_TIMEOUT_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def pricing_enabled(self) -> bool:
        return bool(self.cmc_pro_api_key)


# 全局配置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置"""
    global _settings
    _settings = Settings()
    return _settings
