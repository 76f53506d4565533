from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Sequence


class ParseError(ValueError):
    """Raised when an exchange payload cannot be turned into a canonical value."""


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(Enum):
    NEW = "NEW"
    ACTIVE = "ACTIVE"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"


# Bitfinex v2 order array positions
_WS_ID = 0
_WS_SYMBOL = 3
_WS_MTS_UPDATE = 5
_WS_AMOUNT_ORIG = 7
_WS_TYPE = 8
_WS_STATUS = 13
_WS_PRICE = 16
_WS_PRICE_AVG = 17


@dataclass(frozen=True)
class Order:
    """Canonical order value shared by locally built requests and exchange events."""

    side: OrderSide
    price: Decimal
    amount: Decimal
    status: OrderStatus = OrderStatus.NEW
    id: Optional[str] = None
    symbol: str = ""
    exchange: str = "bitfinex"
    type: str = "exchange limit"
    timestamp: Optional[float] = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def is_buy(self) -> bool:
        return self.side is OrderSide.BUY

    @property
    def is_sell(self) -> bool:
        return self.side is OrderSide.SELL

    @property
    def quote_value(self) -> Decimal:
        return self.price * self.amount

    def with_status(self, status: OrderStatus) -> 'Order':
        return replace(self, status=status)

    @classmethod
    def request(
        cls,
        side: OrderSide,
        price: Decimal,
        amount: Decimal,
        symbol: str,
        exchange: str = "bitfinex",
        order_type: str = "exchange limit",
    ) -> 'Order':
        return cls(
            side=side,
            price=price,
            amount=amount,
            status=OrderStatus.NEW,
            symbol=symbol,
            exchange=exchange,
            type=order_type,
        )

    @classmethod
    def from_socket(cls, payload: Sequence[Any]) -> 'Order':
        """Build from a v2 websocket order array (``on``/``ou``/``oc``/``os`` entries)."""
        if not isinstance(payload, (list, tuple)) or len(payload) <= _WS_PRICE_AVG:
            raise ParseError(f"Malformed socket order: {payload!r}")
        amount_orig = _decimal(payload[_WS_AMOUNT_ORIG], "amount_orig")
        if amount_orig == 0:
            raise ParseError(f"Socket order without amount: {payload!r}")
        price = _decimal(payload[_WS_PRICE], "price")
        avg_raw = payload[_WS_PRICE_AVG]
        avg = _decimal(avg_raw, "price_avg") if avg_raw not in (None, "", 0) else Decimal(0)
        status = parse_socket_status(payload[_WS_STATUS])
        if status is OrderStatus.EXECUTED and avg > 0:
            price = avg
        mts = payload[_WS_MTS_UPDATE]
        return cls(
            side=OrderSide.BUY if amount_orig > 0 else OrderSide.SELL,
            price=price,
            amount=abs(amount_orig),
            status=status,
            id=str(payload[_WS_ID]),
            symbol=_plain_symbol(payload[_WS_SYMBOL]),
            type=str(payload[_WS_TYPE] or "").lower(),
            timestamp=float(mts) / 1000 if mts else None,
            raw=payload,
        )

    @classmethod
    def from_rest_active(cls, payload: Dict[str, Any]) -> 'Order':
        """Build from a v1 REST order status (``/v1/orders``, ``/v1/order/new`` responses)."""
        if not isinstance(payload, dict):
            raise ParseError(f"Malformed REST order: {payload!r}")
        side = _side(payload.get("side"))
        original = _decimal(payload.get("original_amount"), "original_amount")
        remaining = _decimal(payload.get("remaining_amount", original), "remaining_amount")
        if payload.get("is_cancelled"):
            status = OrderStatus.CANCELLED
        elif payload.get("is_live"):
            status = OrderStatus.ACTIVE
        elif remaining == 0:
            status = OrderStatus.EXECUTED
        else:
            status = OrderStatus.NEW
        price = _decimal(payload.get("price"), "price")
        avg = payload.get("avg_execution_price")
        if status is OrderStatus.EXECUTED and avg not in (None, "", "0.0", "0"):
            price = _decimal(avg, "avg_execution_price")
        order_id = payload.get("id", payload.get("order_id"))
        return cls(
            side=side,
            price=price,
            amount=original,
            status=status,
            id=str(order_id) if order_id is not None else None,
            symbol=str(payload.get("symbol") or ""),
            exchange=str(payload.get("exchange") or "bitfinex"),
            type=str(payload.get("type") or ""),
            timestamp=_float(payload.get("timestamp")),
            raw=payload,
        )

    @classmethod
    def from_rest_past(cls, payload: Dict[str, Any], symbol: str = "") -> 'Order':
        """Build from a v1 ``/v1/mytrades`` entry; past trades are always executed."""
        if not isinstance(payload, dict):
            raise ParseError(f"Malformed REST trade: {payload!r}")
        order_id = payload.get("order_id", payload.get("tid"))
        return cls(
            side=_side(payload.get("type")),
            price=_decimal(payload.get("price"), "price"),
            amount=abs(_decimal(payload.get("amount"), "amount")),
            status=OrderStatus.EXECUTED,
            id=str(order_id) if order_id is not None else None,
            symbol=symbol,
            exchange=str(payload.get("exchange") or "bitfinex"),
            timestamp=_float(payload.get("timestamp")),
            raw=payload,
        )

    def to_wire(self) -> Dict[str, str]:
        return {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "side": self.side.value,
            "type": self.type,
            "price": format(self.price, "f"),
            "amount": format(self.amount, "f"),
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.type,
            "status": self.status.value,
            "price": format(self.price, "f"),
            "amount": format(self.amount, "f"),
            "timestamp": self.timestamp,
        }


def parse_socket_status(value: Any) -> OrderStatus:
    # e.g. "ACTIVE", "EXECUTED @ 107.6(-0.2)", "PARTIALLY FILLED @ ...", "CANCELED"
    text = str(value or "").upper()
    if text.startswith("EXECUTED"):
        return OrderStatus.EXECUTED
    if text.startswith("PARTIALLY FILLED"):
        return OrderStatus.PARTIALLY_FILLED
    if text.startswith("ACTIVE"):
        return OrderStatus.ACTIVE
    if "CANCELED" in text or "CANCELLED" in text:
        return OrderStatus.CANCELLED
    raise ParseError(f"Unknown order status: {value!r}")


def _plain_symbol(value: Any) -> str:
    text = str(value or "")
    if text.startswith("t") and len(text) > 1:
        text = text[1:]
    return text.lower()


def _side(value: Any) -> OrderSide:
    text = str(value or "").lower()
    if text == "buy":
        return OrderSide.BUY
    if text == "sell":
        return OrderSide.SELL
    raise ParseError(f"Unknown order side: {value!r}")


def _decimal(value: Any, name: str) -> Decimal:
    if value is None or value == "":
        raise ParseError(f"Missing {name}")
    try:
        out = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ParseError(f"Invalid {name}: {value!r}") from exc
    if not out.is_finite():
        raise ParseError(f"Invalid {name}: {value!r}")
    return out


def _float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
