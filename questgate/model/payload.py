"""
Order payloads, one frozen dataclass per purchase flow.

The UI posts `{"type": "<flow>", ...}`; `parse_payload` turns that into one of
the four variants and `validate_payload` checks the per-flow rules before
anything touches the network.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Tuple, Union

from ..config import MAX_EXTEND_DAYS
from ..errors import ValidationError


class Tier(str, Enum):
    ELITE = "elite"
    GOLD = "gold"


@dataclass(frozen=True)
class CartItem:
    id: str
    name: str
    unit_price: float
    quantity: int


@dataclass(frozen=True)
class WebshopOrder:
    flow: ClassVar[str] = "webshop"
    items: Tuple[CartItem, ...]
    character_id: int = 0
    character_name: str = ""
    is_gift: bool = False
    gift_character_name: str = ""

    def request_body(self) -> Dict[str, Any]:
        return {
            "items": [
                {"id": i.id, "name": i.name, "price": float(i.unit_price),
                 "quantity": i.quantity}
                for i in self.items
            ],
            # recipient fields win for gifts; the buyer's character is ignored
            "character_id": 0 if self.is_gift else self.character_id,
            "character_name": "" if self.is_gift else self.character_name,
            "is_gift": self.is_gift,
            "gift_character_name": (
                self.gift_character_name.strip() if self.is_gift else ""
            ),
        }


@dataclass(frozen=True)
class BundleOrder:
    flow: ClassVar[str] = "bundle"
    bundle_id: int
    character_id: int
    character_name: str


@dataclass(frozen=True)
class GamePassPurchase:
    flow: ClassVar[str] = "gamepass"
    tier: Tier
    upgrade: bool = False


@dataclass(frozen=True)
class GamePassExtend:
    flow: ClassVar[str] = "gamepass_extend"
    tier: Tier
    days: int


OrderPayload = Union[WebshopOrder, BundleOrder, GamePassPurchase,
                     GamePassExtend]

FLOWS = {
    cls.flow: cls
    for cls in (WebshopOrder, BundleOrder, GamePassPurchase, GamePassExtend)
}


# ----------------------------
# Parsing
# ----------------------------
def _int(data: Dict[str, Any], *keys: str, default=None) -> int:
    for k in keys:
        if k in data and data[k] is not None:
            v = data[k]
            if isinstance(v, bool):
                break
            try:
                return int(v)
            except (TypeError, ValueError):
                raise ValidationError(f"{k} must be an integer")
    if default is None:
        raise ValidationError(f"{keys[0]} is required")
    return default


def _str(data: Dict[str, Any], *keys: str) -> str:
    for k in keys:
        if data.get(k) is not None:
            return str(data[k])
    return ""


def _tier(value: Any) -> Tier:
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"tier must be one of {[t.value for t in Tier]}, got {value!r}"
        )


def _cart_item(raw: Any) -> CartItem:
    if not isinstance(raw, dict):
        raise ValidationError("cart items must be objects")
    price = raw.get("unit_price", raw.get("price"))
    try:
        price = float(price)
    except (TypeError, ValueError):
        raise ValidationError("cart item price must be a number")
    quantity = raw.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("cart item quantity must be an integer")
    return CartItem(
        id=_str(raw, "id"), name=_str(raw, "name"), unit_price=price,
        quantity=quantity,
    )


def parse_payload(data: Dict[str, Any]) -> OrderPayload:
    if not isinstance(data, dict):
        raise ValidationError("order payload must be an object")
    kind = data.get("type")
    if kind not in FLOWS:
        raise ValidationError(f"unknown order type: {kind!r}")

    if kind == "webshop":
        items = data.get("items")
        if not isinstance(items, list):
            raise ValidationError("items must be a list")
        return WebshopOrder(
            items=tuple(_cart_item(i) for i in items),
            character_id=_int(data, "characterId", "character_id", default=0),
            character_name=_str(data, "characterName", "character_name"),
            is_gift=bool(data.get("isGift", data.get("is_gift", False))),
            gift_character_name=_str(
                data, "giftCharacterName", "gift_character_name"
            ),
        )
    if kind == "bundle":
        return BundleOrder(
            bundle_id=_int(data, "bundleId", "bundle_id"),
            character_id=_int(data, "characterId", "character_id"),
            character_name=_str(data, "characterName", "character_name"),
        )
    if kind == "gamepass":
        return GamePassPurchase(
            tier=_tier(data.get("tier")),
            upgrade=bool(data.get("upgrade", False)),
        )
    return GamePassExtend(
        tier=_tier(data.get("tier")),
        days=_int(data, "days"),
    )


# ----------------------------
# Validation
# ----------------------------
def validate_payload(payload: OrderPayload) -> None:
    if isinstance(payload, WebshopOrder):
        if not payload.items:
            raise ValidationError("cart is empty")
        for item in payload.items:
            if not item.id:
                raise ValidationError("cart item id is required")
            if item.quantity <= 0:
                raise ValidationError(
                    f"quantity for {item.name or item.id} must be positive"
                )
            if item.unit_price <= 0:
                raise ValidationError(
                    f"price for {item.name or item.id} must be positive"
                )
        if payload.is_gift:
            if not payload.gift_character_name.strip():
                raise ValidationError("gift recipient name is required")
        elif payload.character_id <= 0 or not payload.character_name:
            raise ValidationError("select a character to receive the items")
    elif isinstance(payload, BundleOrder):
        if payload.bundle_id <= 0:
            raise ValidationError("bundle id is required")
        if payload.character_id <= 0:
            raise ValidationError("select a character to receive the bundle")
    elif isinstance(payload, GamePassPurchase):
        _tier(getattr(payload.tier, "value", payload.tier))
    elif isinstance(payload, GamePassExtend):
        _tier(getattr(payload.tier, "value", payload.tier))
        if isinstance(payload.days, bool) or not isinstance(payload.days, int):
            raise ValidationError("days must be an integer")
        if not 1 <= payload.days <= MAX_EXTEND_DAYS:
            raise ValidationError(
                f"days must be between 1 and {MAX_EXTEND_DAYS}"
            )
    else:
        raise ValidationError(
            f"unsupported order payload: {type(payload).__name__}"
        )
