from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .money import ZERO, to_decimal


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    unit_price: Decimal
    stock: int
    low_stock_threshold: int = 0
    last_sale_at: Optional[datetime] = None

    @property
    def is_low_stock(self) -> bool:
        # Sold out counts as low.
        return self.stock <= self.low_stock_threshold

    @property
    def is_sold_out(self) -> bool:
        return self.stock <= 0

    @classmethod
    def from_row(cls, row: dict) -> "Product":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            unit_price=to_decimal(row.get("unit_price")),
            stock=int(row.get("stock") or 0),
            low_stock_threshold=int(row.get("low_stock_threshold") or 0),
            last_sale_at=row.get("last_sale_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "unit_price": self.unit_price,
            "stock": self.stock,
            "low_stock_threshold": self.low_stock_threshold,
            "low_stock": self.is_low_stock,
            "sold_out": self.is_sold_out,
            "last_sale_at": self.last_sale_at,
        }


@dataclass(frozen=True)
class Customer:
    id: str
    name: str = ""
    email: str = ""
    total_spent: Decimal = ZERO
    purchase_count: int = 0
    last_purchase_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Customer":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            email=str(row.get("email") or ""),
            total_spent=to_decimal(row.get("total_spent")),
            purchase_count=int(row.get("purchase_count") or 0),
            last_purchase_at=row.get("last_purchase_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "total_spent": self.total_spent,
            "purchase_count": self.purchase_count,
            "last_purchase_at": self.last_purchase_at,
        }


@dataclass(frozen=True)
class CustomerRef:
    id: str
    name: str = ""
