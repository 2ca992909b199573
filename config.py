import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KIOSK_", env_file=".env", extra="ignore")

    # Inventory Store: products + settlement intents
    inventory_url: str = "sqlite:///inventory.db"
    # Ledger Store: customers + wallet movements
    ledger_url: str = "sqlite:///ledger.db"

    store_timeout: float = 10.0
    seed_demo_data: bool = True
    log_level: str = "INFO"
    reconcile_after_seconds: int = 60


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
