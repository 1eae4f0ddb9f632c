"""
Servicing Configuration

Business rules (penalty rate, cycle cap, refinance rates) and runtime
settings, read from LENDING_* environment variables or a .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "loan_servicing.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business calendar
    business_timezone: str = "America/Argentina/Tucuman"

    # Accrual rules
    daily_penalty_rate: str = "0.025"  # 2.5% per day late
    open_ended_max_cycles: int = 3
    open_ended_default_rate: str = "60"  # percent per cycle
    min_interest_pct: str = "60"  # floor for fixed-schedule origination interest
    overpayment_tolerance: str = "0.01"

    # Refinancing menu (monthly percent)
    refinance_rate_p1: str = "25"
    refinance_rate_p2: str = "15"

    # Overdue sweep
    sweep_enabled: bool = True
    sweep_hour: int = 2  # business-time hour of the daily sweep

    # Feature flags
    enable_audit_logging: bool = True
    enable_scoring: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Active settings"""
    return config


def reload_config() -> LendingConfig:
    """Re-read the environment (tests and hot reconfiguration)"""
    global config
    config = LendingConfig()
    return config
