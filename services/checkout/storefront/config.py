"""
Checkout Service — 設定

すべての設定は環境変数から一度だけ読み込む。
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    redis_url: str = "redis://localhost:6379"

    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_environment: str = "sandbox"
    paypal_timeout_seconds: float = 15.0

    currency: str = "MXN"
    brand_name: str = "TENIS2_SHOP"
    base_url: str = "http://localhost:8000"

    # PENDING のまま放置された注文 (作成直後のクラッシュ等) を解放するまでの秒数
    pending_order_ttl_seconds: int = 15 * 60
    # 顧客の承認待ち (PENDING_PAYMENT) を打ち切るまでの秒数
    payment_approval_ttl_seconds: int = 3 * 60 * 60
    # 0 でスイーパーを無効化
    sweep_interval_seconds: float = 60.0

    log_level: str = "INFO"

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    def missing_paypal_settings(self) -> list[str]:
        missing = []
        if not self.paypal_client_id:
            missing.append("PAYPAL_CLIENT_ID")
        if not self.paypal_client_secret:
            missing.append("PAYPAL_CLIENT_SECRET")
        if not self.paypal_webhook_id:
            missing.append("PAYPAL_WEBHOOK_ID")
        return missing

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            paypal_client_id=env.get("PAYPAL_CLIENT_ID", ""),
            paypal_client_secret=env.get("PAYPAL_CLIENT_SECRET", ""),
            paypal_webhook_id=env.get("PAYPAL_WEBHOOK_ID", ""),
            paypal_environment=env.get("PAYPAL_ENVIRONMENT", cls.paypal_environment),
            paypal_timeout_seconds=float(
                env.get("PAYPAL_TIMEOUT_SECONDS", cls.paypal_timeout_seconds)
            ),
            currency=env.get("CHECKOUT_CURRENCY", cls.currency),
            brand_name=env.get("BRAND_NAME", cls.brand_name),
            base_url=env.get("BASE_URL", cls.base_url),
            pending_order_ttl_seconds=int(
                env.get("PENDING_ORDER_TTL_SECONDS", cls.pending_order_ttl_seconds)
            ),
            payment_approval_ttl_seconds=int(
                env.get(
                    "PAYMENT_APPROVAL_TTL_SECONDS", cls.payment_approval_ttl_seconds
                )
            ),
            sweep_interval_seconds=float(
                env.get("SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds)
            ),
            log_level=env.get("LOG_LEVEL", cls.log_level),
        )
