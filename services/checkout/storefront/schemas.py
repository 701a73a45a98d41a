"""
Checkout Service — リクエストモデル

カートはクライアントのセッションが保持する一時的な値で、
チェックアウト開始時にリクエストボディとして丸ごと渡される。
必須項目の検証は cart.validate_cart が行い InvalidCart を返すため、
ここでは型だけを受け付け、欠損は None として通す。
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CartLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_code: str | None = Field(default=None, alias="productCode")
    size: str | None = None
    unit_price: Decimal | None = Field(default=None, alias="unitPrice")
    quantity: int | None = None
    name: str = ""


class InitiateCheckoutRequest(BaseModel):
    lines: list[CartLine] = Field(default_factory=list)


class ProviderOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_order_id: str = Field(alias="providerOrderId", min_length=1)
