"""Static catalog of subscription tiers and one-off services with their processor prices.

This is the single source of truth for price id <-> tier mapping; both the
checkout builder and the checkout verification fallback resolve through it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .models import Tier


@dataclass(frozen=True)
class SubscriptionProduct:
    """A recurring subscription sold at a given tier."""

    product_id: str
    tier: Tier
    name: str
    price_in_cents: int
    price_id: str
    features: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceProduct:
    """A one-off service a subscriber can buy from a creator."""

    product_id: str
    name: str
    price_in_cents: int
    price_id: str
    category: str


SUBSCRIPTION_PRODUCTS: Dict[Tier, SubscriptionProduct] = {
    Tier.PRATA: SubscriptionProduct(
        product_id="sub-prata",
        tier=Tier.PRATA,
        name="Assinatura Prata",
        price_in_cents=1990,
        price_id="price_1SEJqf5I63txB0RGffH4TL4q",
        features=("Stories exclusivos", "Conteúdo premium básico"),
    ),
    Tier.GOLD: SubscriptionProduct(
        product_id="sub-gold",
        tier=Tier.GOLD,
        name="Assinatura Gold",
        price_in_cents=3990,
        price_id="price_1SEJrb5I63txB0RGmEzQuWdw",
        features=("Tudo do Prata", "Vídeos exclusivos", "Badge Gold no perfil"),
    ),
    Tier.PLATINUM: SubscriptionProduct(
        product_id="sub-platinum",
        tier=Tier.PLATINUM,
        name="Assinatura Platinum",
        price_in_cents=7990,
        price_id="price_1SEJsm5I63txB0RGwaobzeyd",
        features=("Tudo do Gold", "Mensagens diretas", "Badge Platinum exclusivo"),
    ),
    Tier.DIAMANTE: SubscriptionProduct(
        product_id="sub-diamante",
        tier=Tier.DIAMANTE,
        name="Assinatura Diamante",
        price_in_cents=9990,
        price_id="price_1SEJtR5I63txB0RGvcbpNBay",
        features=("Tudo do Platinum", "Videochamadas mensais", "Badge Diamante único"),
    ),
}

SERVICE_PRODUCTS: Dict[str, ServiceProduct] = {
    "video-call": ServiceProduct(
        product_id="video-call",
        name="Chamada de Vídeo Privada",
        price_in_cents=7990,
        price_id="price_1SGR565I63txB0RGgoOky5My",
        category="video",
    ),
    "foot-pack": ServiceProduct(
        product_id="foot-pack",
        name="Pack de Pé",
        price_in_cents=4990,
        price_id="price_1SGR4M5I63txB0RG2Ygzu78m",
        category="pack",
    ),
    "custom-pack": ServiceProduct(
        product_id="custom-pack",
        name="Pack Personalizado",
        price_in_cents=9700,
        price_id="price_1SGR3j5I63txB0RGuyM3i3mx",
        category="custom",
    ),
    "personal-meeting": ServiceProduct(
        product_id="personal-meeting",
        name="Encontro Personalizado",
        price_in_cents=72900,
        price_id="price_1SGQxT5I63txB0RGBhB57rg3",
        category="meeting",
    ),
}

_TIER_BY_PRICE: Dict[str, Tier] = {product.price_id: tier for tier, product in SUBSCRIPTION_PRODUCTS.items()}
_SERVICE_BY_PRICE: Dict[str, ServiceProduct] = {product.price_id: product for product in SERVICE_PRODUCTS.values()}


def get_subscription_product(tier: Optional[Tier]) -> Optional[SubscriptionProduct]:
    """Return the product sold at ``tier``; the free tier has none."""

    if tier is None:
        return None
    return SUBSCRIPTION_PRODUCTS.get(tier)


def get_service_product(product_id: Optional[str]) -> Optional[ServiceProduct]:
    if not product_id:
        return None
    return SERVICE_PRODUCTS.get(product_id)


def tier_for_price(price_id: Optional[str]) -> Optional[Tier]:
    if not price_id:
        return None
    return _TIER_BY_PRICE.get(price_id)


def service_product_for_price(price_id: Optional[str]) -> Optional[ServiceProduct]:
    if not price_id:
        return None
    return _SERVICE_BY_PRICE.get(price_id)
