"""Configuration management using Pydantic Settings"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cooperative workflow configuration loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./koperasi.db"

    # Service
    service_name: str = "koperasi-workflow"
    log_level: str = "INFO"

    # Rates (percent)
    loan_interest_rate: Decimal = Decimal("8")  # Per year, flat
    shop_margin_rate: Decimal = Decimal("5")  # Online goods loans only
    deposit_interest_rate: Decimal = Decimal("4")  # Per year, flat
    deposit_early_withdrawal_penalty_rate: Decimal = Decimal("3")
    max_rate_percent: Decimal = Decimal("100")  # Upper bound for interest and margin rates

    # Loan limits (whole rupiah)
    min_loan_amount: int = 500_000
    max_goods_loan_amount: int = 15_000_000
    max_loan_tenor: int = 36  # Months
    max_deposit_tenor: int = 60  # Months
    deposit_change_admin_fee: int = 15_000

    # Loans strictly above this amount need Pengawas review; None disables the step
    supervisor_review_threshold: Optional[int] = 0

    # Payroll calendar (day of month)
    cooperative_cutoff_day: int = 15
    cooperative_payroll_day: int = 27


settings = Settings()
