"""Shop catalog and identity lookups consumed by the queue core.

The real catalog (shops, rate cards, workers, device tokens) lives in other
services. The core only needs a handful of reads, described by `Catalog`.
`InMemoryCatalog` implements them for the standalone server and for tests; it
can be filled from a JSON file validated with pydantic.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class RateCardItem:
    service_ref: str
    price: Decimal
    name: str = ""


@dataclass
class ShopInfo:
    ref: str
    name: str
    operator_ref: str
    services: Dict[str, RateCardItem] = field(default_factory=dict)

    def rate_card(self) -> Dict[str, Decimal]:
        return {ref: item.price for ref, item in self.services.items()}


@dataclass
class WorkerInfo:
    ref: str
    shop_ref: str
    name: str = ""
    available: bool = True


class Catalog(Protocol):
    def get_shop(self, shop_ref: str) -> Optional[ShopInfo]: ...

    def get_worker(self, worker_ref: str) -> Optional[WorkerInfo]: ...

    def push_token_for(self, user_ref: str) -> Optional[str]: ...


class InMemoryCatalog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._shops: Dict[str, ShopInfo] = {}
        self._workers: Dict[str, WorkerInfo] = {}
        self._push_tokens: Dict[str, str] = {}

    # -------------------- writes --------------------

    def add_shop(
        self,
        ref: str,
        *,
        name: str = "",
        operator_ref: str = "",
        prices: Dict[str, Decimal | int | float | str] | None = None,
    ) -> ShopInfo:
        shop = ShopInfo(ref=ref, name=name or ref, operator_ref=operator_ref)
        for service_ref, price in (prices or {}).items():
            shop.services[service_ref] = RateCardItem(service_ref, Decimal(str(price)))
        with self._lock:
            self._shops[ref] = shop
        return shop

    def set_price(self, shop_ref: str, service_ref: str, price: Decimal | int | float | str) -> None:
        with self._lock:
            shop = self._shops[shop_ref]
            old = shop.services.get(service_ref)
            shop.services[service_ref] = RateCardItem(
                service_ref, Decimal(str(price)), old.name if old else ""
            )

    def remove_service(self, shop_ref: str, service_ref: str) -> None:
        with self._lock:
            self._shops[shop_ref].services.pop(service_ref, None)

    def add_worker(self, ref: str, *, shop_ref: str, name: str = "", available: bool = True) -> WorkerInfo:
        worker = WorkerInfo(ref=ref, shop_ref=shop_ref, name=name or ref, available=available)
        with self._lock:
            self._workers[ref] = worker
        return worker

    def set_worker_available(self, ref: str, available: bool) -> None:
        with self._lock:
            self._workers[ref].available = available

    def set_push_token(self, user_ref: str, token: str | None) -> None:
        with self._lock:
            if token:
                self._push_tokens[user_ref] = token
            else:
                self._push_tokens.pop(user_ref, None)

    # -------------------- Catalog --------------------

    def get_shop(self, shop_ref: str) -> Optional[ShopInfo]:
        with self._lock:
            shop = self._shops.get(shop_ref)
            if shop is None:
                return None
            # Hand out a copy: callers price against the card as it is now.
            return ShopInfo(
                ref=shop.ref,
                name=shop.name,
                operator_ref=shop.operator_ref,
                services=dict(shop.services),
            )

    def get_worker(self, worker_ref: str) -> Optional[WorkerInfo]:
        with self._lock:
            worker = self._workers.get(worker_ref)
            if worker is None:
                return None
            return WorkerInfo(worker.ref, worker.shop_ref, worker.name, worker.available)

    def push_token_for(self, user_ref: str) -> Optional[str]:
        with self._lock:
            return self._push_tokens.get(user_ref)


# -------------------- catalog file --------------------


class ServicePriceModel(BaseModel):
    service_ref: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    name: str = ""


class ShopModel(BaseModel):
    ref: str = Field(min_length=1)
    name: str = ""
    operator_ref: str = ""
    services: List[ServicePriceModel] = Field(default_factory=list)


class WorkerModel(BaseModel):
    ref: str = Field(min_length=1)
    shop_ref: str = Field(min_length=1)
    name: str = ""
    available: bool = True


class CatalogFile(BaseModel):
    shops: List[ShopModel] = Field(default_factory=list)
    workers: List[WorkerModel] = Field(default_factory=list)
    push_tokens: Dict[str, str] = Field(default_factory=dict)


def catalog_from_model(model: CatalogFile) -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    for shop in model.shops:
        info = catalog.add_shop(shop.ref, name=shop.name, operator_ref=shop.operator_ref)
        for svc in shop.services:
            info.services[svc.service_ref] = RateCardItem(svc.service_ref, svc.price, svc.name)
    for worker in model.workers:
        catalog.add_worker(worker.ref, shop_ref=worker.shop_ref, name=worker.name, available=worker.available)
    for user_ref, token in model.push_tokens.items():
        catalog.set_push_token(user_ref, token)
    return catalog


def load_catalog(path: str | Path) -> InMemoryCatalog:
    """Read a catalog JSON file.

    Raises pydantic.ValidationError on malformed content.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return catalog_from_model(CatalogFile.model_validate(raw))
