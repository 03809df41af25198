"""
Record shapes for the QuickBill till and their JSON codecs.

Field names on the wire are camelCase (itemId, totalAmount, customerName)
so payloads written by earlier till versions load unchanged.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ModelDecodeError(ValueError):
    """Raised when a stored payload cannot be turned back into records."""


class AppView(str, Enum):
    BILLING = "billing"
    HISTORY = "history"
    INVENTORY = "inventory"
    AUTH = "auth"


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    rate: float
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "rate": self.rate, "category": self.category}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            rate=float(data["rate"]),
            category=str(data.get("category") or ""),
        )


@dataclass(frozen=True)
class BillItem:
    id: str
    item_id: str
    name: str
    rate: float
    quantity: float
    total: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "itemId": self.item_id,
            "name": self.name,
            "rate": self.rate,
            "quantity": self.quantity,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillItem":
        return cls(
            id=str(data["id"]),
            item_id=str(data["itemId"]),
            name=str(data["name"]),
            rate=float(data["rate"]),
            quantity=float(data["quantity"]),
            total=float(data["total"]),
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    timestamp: int
    items: Tuple[BillItem, ...] = field(default_factory=tuple)
    total_amount: float = 0.0
    customer_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "items": [line.to_dict() for line in self.items],
            "totalAmount": self.total_amount,
        }
        # Absent rather than null, matching records written by the browser till
        if self.customer_name is not None:
            data["customerName"] = self.customer_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        lines = data.get("items") or []
        if not isinstance(lines, list):
            raise TypeError("transaction items must be a list")
        customer = data.get("customerName")
        return cls(
            id=str(data["id"]),
            timestamp=int(data["timestamp"]),
            items=tuple(BillItem.from_dict(line) for line in lines),
            total_amount=float(data["totalAmount"]),
            customer_name=str(customer) if customer is not None else None,
        )


@dataclass(frozen=True)
class User:
    phone: str
    pin: str

    def to_dict(self) -> Dict[str, Any]:
        return {"phone": self.phone, "pin": self.pin}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(phone=str(data["phone"]), pin=str(data["pin"]))


def _dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _loads_list(raw: str) -> List[Any]:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ModelDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise ModelDecodeError(f"expected a list, got {type(parsed).__name__}")
    return parsed


def encode_inventory(items: List[Item]) -> str:
    return _dumps([item.to_dict() for item in items])


def decode_inventory(raw: str) -> List[Item]:
    try:
        return [Item.from_dict(entry) for entry in _loads_list(raw)]
    except ModelDecodeError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ModelDecodeError(f"malformed inventory record: {exc!r}") from exc


def encode_transactions(transactions: List[Transaction]) -> str:
    return _dumps([txn.to_dict() for txn in transactions])


def decode_transactions(raw: str) -> List[Transaction]:
    try:
        return [Transaction.from_dict(entry) for entry in _loads_list(raw)]
    except ModelDecodeError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ModelDecodeError(f"malformed transaction record: {exc!r}") from exc


def encode_user(user: User) -> str:
    return _dumps(user.to_dict())


def decode_user(raw: str) -> User:
    try:
        return User.from_dict(json.loads(raw))
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ModelDecodeError(f"malformed user profile: {exc!r}") from exc
