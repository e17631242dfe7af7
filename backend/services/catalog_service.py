"""
Catalog reader: the core's only view of products.

Listing CRUD belongs to the catalog service; checkout and cart only need
price, seller id and availability by product id.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Product
from domain.constants import PURCHASABLE_PRODUCT_STATUSES


@dataclass(frozen=True)
class Listing:
    product_id: int
    seller_id: str
    title: str
    price: int
    quantity: Optional[int]
    status: str
    hall_id: Optional[int] = None
    room_number: Optional[str] = None

    @property
    def purchasable(self) -> bool:
        return self.status in PURCHASABLE_PRODUCT_STATUSES

    def has_stock_for(self, quantity: int) -> bool:
        return self.quantity is None or quantity <= self.quantity


def _to_listing(p: Product) -> Listing:
    return Listing(
        product_id=p.id,
        seller_id=p.seller_id,
        title=p.title,
        price=p.price,
        quantity=p.quantity,
        status=p.status,
        hall_id=p.hall_id,
        room_number=p.room_number,
    )


async def get_listing(db: AsyncSession, product_id: int) -> Listing | None:
    product = await db.get(Product, product_id)
    return _to_listing(product) if product else None


async def get_listings(db: AsyncSession, product_ids: Iterable[int]) -> dict[int, Listing]:
    ids = list(set(product_ids))
    if not ids:
        return {}
    res = await db.execute(select(Product).where(Product.id.in_(ids)))
    return {p.id: _to_listing(p) for p in res.scalars().all()}
