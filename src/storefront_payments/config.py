"""Environment-driven configuration.

Every provider has a test and a live credential set; ``<PROVIDER>_TEST_MODE=true``
selects the test one. Missing credentials mean the provider is disabled, not
that the application fails to start.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_APP_URL = "https://borboraqua.am"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _pick(test_mode: bool, test_name: str, live_name: str) -> str:
    return os.getenv(test_name if test_mode else live_name, "")


class AmeriabankSettings(BaseModel):
    test_mode: bool = False
    client_id: str = ""
    username: str = ""
    password: str = ""

    @property
    def base_url(self) -> str:
        if self.test_mode:
            return "https://servicestest.ameriabank.am/VPOS"
        return "https://services.ameriabank.am/VPOS"

    @classmethod
    def from_env(cls) -> "AmeriabankSettings":
        test_mode = _env_flag("AMERIA_TEST_MODE")
        return cls(
            test_mode=test_mode,
            client_id=_pick(test_mode, "AMERIA_CLIENT_ID", "AMERIA_LIVE_CLIENT_ID"),
            username=_pick(test_mode, "AMERIA_USERNAME", "AMERIA_LIVE_USERNAME"),
            password=_pick(test_mode, "AMERIA_PASSWORD", "AMERIA_LIVE_PASSWORD"),
        )


class FastshiftSettings(BaseModel):
    test_mode: bool = False
    token: str = ""
    # test and live share the host, only the token differs
    api_base: str = "https://merchants.fastshift.am/api/en"

    @classmethod
    def from_env(cls) -> "FastshiftSettings":
        test_mode = _env_flag("FASTSHIFT_TEST_MODE")
        return cls(
            test_mode=test_mode,
            token=_pick(test_mode, "FASTSHIFT_TOKEN", "FASTSHIFT_LIVE_TOKEN"),
        )


class IdramSettings(BaseModel):
    test_mode: bool = False
    rec_account: str = ""
    secret_key: str = ""
    form_action: str = "https://banking.idram.am/Payment/GetPayment"

    @classmethod
    def from_env(cls) -> "IdramSettings":
        test_mode = _env_flag("IDRAM_TEST_MODE")
        return cls(
            test_mode=test_mode,
            rec_account=_pick(test_mode, "IDRAM_REC_ACCOUNT", "IDRAM_LIVE_REC_ACCOUNT"),
            secret_key=_pick(test_mode, "IDRAM_SECRET_KEY", "IDRAM_LIVE_SECRET_KEY"),
        )


class TelcellSettings(BaseModel):
    test_mode: bool = False
    shop_id: str = ""
    shop_key: str = ""
    api_url: str = "https://telcellmoney.am/invoices"

    @classmethod
    def from_env(cls) -> "TelcellSettings":
        test_mode = _env_flag("TELCELL_TEST_MODE")
        return cls(
            test_mode=test_mode,
            shop_id=_pick(test_mode, "TELCELL_SHOP_ID", "TELCELL_LIVE_SHOP_ID"),
            shop_key=_pick(test_mode, "TELCELL_SHOP_KEY", "TELCELL_LIVE_SHOP_KEY"),
        )


class Settings(BaseModel):
    """Application settings."""

    app_url: str = DEFAULT_APP_URL
    database_url: Optional[str] = None
    create_tables: bool = True
    provider_timeout_seconds: float = Field(default=15.0, gt=0)
    init_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    ameriabank: AmeriabankSettings = Field(default_factory=AmeriabankSettings)
    fastshift: FastshiftSettings = Field(default_factory=FastshiftSettings)
    idram: IdramSettings = Field(default_factory=IdramSettings)
    telcell: TelcellSettings = Field(default_factory=TelcellSettings)

    @property
    def base_url(self) -> str:
        """APP_URL without a trailing slash."""
        return self.app_url.rstrip("/") or DEFAULT_APP_URL

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_url=os.getenv("APP_URL") or DEFAULT_APP_URL,
            database_url=os.getenv("DATABASE_URL") or None,
            create_tables=_env_flag("DATABASE_CREATE_TABLES", default=True),
            provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15")),
            init_rate_limit=os.getenv("INIT_RATE_LIMIT", "10/minute"),
            rate_limit_enabled=_env_flag("RATE_LIMIT_ENABLED", default=True),
            ameriabank=AmeriabankSettings.from_env(),
            fastshift=FastshiftSettings.from_env(),
            idram=IdramSettings.from_env(),
            telcell=TelcellSettings.from_env(),
        )
