"""
Checkout Service — カートスナップショット

チェックアウト開始時点のカートを検証し、単価を最小通貨単位 (centavos) で固定する。
以後の合計金額はこのスナップショットだけから計算し、カタログの現在価格は参照しない。
単品購入も要素 1 のカートとして扱う。
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .errors import InvalidCart
from .schemas import CartLine

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PricedLine:
    product_code: str
    size: str
    quantity: int
    unit_price_cents: int
    name: str = ""

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def to_cents(amount: Decimal) -> int:
    """小数点以下 2 桁までの金額を centavos に変換する。3 桁以上は拒否する。"""
    try:
        quantized = amount.quantize(CENTS)
    except InvalidOperation as e:
        raise InvalidCart(f"Invalid amount: {amount}") from e
    if quantized != amount:
        raise InvalidCart(f"Amount has more than two decimal places: {amount}")
    return int(quantized * 100)


def format_amount(cents: int) -> str:
    """centavos を PayPal が要求する "1000.00" 形式の文字列にする。"""
    return str((Decimal(cents) / 100).quantize(CENTS))


def cart_total_cents(lines: list[PricedLine]) -> int:
    return sum(line.subtotal_cents for line in lines)


def validate_cart(lines: list[CartLine], owner_id: str | None) -> list[PricedLine]:
    if not owner_id:
        raise InvalidCart("Missing customer identity")
    if not lines:
        raise InvalidCart("Cart is empty")

    priced: list[PricedLine] = []
    for index, line in enumerate(lines):
        if not line.product_code:
            raise InvalidCart("Missing product code", line=index)
        if not line.size:
            raise InvalidCart("Missing size", line=index)
        if line.unit_price is None:
            raise InvalidCart("Missing unit price", line=index)
        if not line.unit_price.is_finite() or line.unit_price < 0:
            raise InvalidCart("Unit price must be a non-negative amount", line=index)
        if line.quantity is None or line.quantity <= 0:
            raise InvalidCart("Quantity must be a positive integer", line=index)

        priced.append(
            PricedLine(
                product_code=line.product_code,
                size=line.size,
                quantity=line.quantity,
                unit_price_cents=to_cents(line.unit_price),
                name=line.name,
            )
        )

    if cart_total_cents(priced) <= 0:
        raise InvalidCart("Cart total must be greater than zero")
    return priced
