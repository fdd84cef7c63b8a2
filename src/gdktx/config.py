"""
Configuration management using pydantic-settings.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from gdktx.constants import DEFAULT_FEE_RATE, DEFAULT_MIN_FEE_RATE, STANDARD_DUST_LIMIT


class BuilderSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GDKTX_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal[
        "mainnet", "testnet", "regtest", "liquid", "liquid-testnet", "elements-regtest"
    ] = "mainnet"
    log_level: str = "INFO"

    # Fee rates in sat/kvB
    default_fee_rate: int = Field(default=DEFAULT_FEE_RATE, ge=0)
    min_fee_rate: int = Field(default=DEFAULT_MIN_FEE_RATE, ge=0)
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)

    rbf_enabled: bool = True
    randomize_inputs: bool = True

    # Relative timelock of csv multisig outputs, in blocks (about 6 months)
    csv_blocks: int = Field(default=25920, ge=1, le=0xFFFF)


def get_settings() -> BuilderSettings:
    return BuilderSettings()
