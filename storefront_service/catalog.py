"""
catalog.py — Products, reviews and Pick-Up Mtaani locations.
"""

import logging
from typing import Optional

from sqlalchemy import select, or_, func, delete

from .db import Database
from .exceptions import NotFoundError, ValidationError
from .models import (
    ProductCreateRequest, ProductUpdateRequest, ReviewCreateRequest, ReviewUpdateRequest, PickupLocation
)
from .tables import ProductRecord, ReviewRecord, UserRecord

log = logging.getLogger(__name__)

PICKUP_LOCATIONS = [
    PickupLocation(id='pm_001', name='Nairobi CBD - Sasa Mall', region='CBD', price=120),
    PickupLocation(id='pm_002', name='Nairobi CBD - Imenti House', region='CBD', price=120),
    PickupLocation(id='pm_003', name='Westlands - The Mall', region='Westlands', price=150),
    PickupLocation(id='pm_004', name='Roysambu - TRM', region='Thika Road', price=180),
    PickupLocation(id='pm_005', name='Kahawa Wendani - Magunas', region='Thika Road', price=180),
    PickupLocation(id='pm_006', name='Eastleigh - Yare Towers', region='Eastleigh', price=150),
    PickupLocation(id='pm_007', name='Karen - Shopping Center', region='Karen', price=250),
    PickupLocation(id='pm_008', name='Ongata Rongai - Tuskys', region='Rongai', price=250),
    PickupLocation(id='pm_009', name='Juja - Juja City Mall', region='Juja', price=200),
    PickupLocation(id='pm_010', name='Thika - Ananas Mall', region='Thika', price=220),
    PickupLocation(id='pm_011', name='Utawala - Naivas', region='Embakasi', price=180),
    PickupLocation(id='pm_012', name='South B - Hazina', region='South B', price=150),
    PickupLocation(id='pm_013', name='Langata - Cleanshelf', region='Langata', price=200),
    PickupLocation(id='pm_014', name='Buruburu - The Point', region='Eastlands', price=150),
    PickupLocation(id='pm_015', name='Donholm - Greenspan', region='Eastlands', price=150),
]


def search_pickup_locations(query: str = "") -> list[PickupLocation]:
    query = (query or "").strip().lower()
    if not query:
        return list(PICKUP_LOCATIONS)
    return [loc for loc in PICKUP_LOCATIONS if query in loc.name.lower() or query in loc.region.lower()]


def get_pickup_location(location_id: str) -> PickupLocation:
    for loc in PICKUP_LOCATIONS:
        if loc.id == location_id:
            return loc
    raise ValidationError("Unknown Pick-Up Mtaani location.", details={'location_id': location_id})


# Product field names on the wire -> table columns
_PRODUCT_COLUMNS = {
    "name": "name",
    "category": "category",
    "price": "price",
    "image": "image",
    "description": "description",
    "isFeatured": "is_featured",
    "stock": "stock",
}

SORT_ORDERS = {
    "price-asc": [ProductRecord.price.asc()],
    "price-desc": [ProductRecord.price.desc()],
    "newest": [ProductRecord.created_at.desc(), ProductRecord.id.desc()],
    "rating": [ProductRecord.average_rating.desc()],
}
DEFAULT_SORT = [ProductRecord.is_featured.desc(), ProductRecord.id.desc()]


class ProductRepository:
    def __init__(self, database: Database):
        self.db = database

    async def create(self, request: ProductCreateRequest) -> ProductRecord:
        values = request.model_dump()
        record = ProductRecord(**{_PRODUCT_COLUMNS[k]: v for k, v in values.items()})
        record.category = request.category.value
        async with self.db.session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        log.info(f"[Product: {record.id}] Created '{record.name}'.")
        return record

    async def get(self, product_id: int) -> ProductRecord:
        async with self.db.session() as session:
            product = await session.get(ProductRecord, product_id)
        if product is None:
            raise NotFoundError("Product not found", details={'product_id': product_id})
        return product

    async def list_all(self) -> list[ProductRecord]:
        async with self.db.session() as session:
            result = await session.execute(select(ProductRecord).order_by(ProductRecord.id))
            return list(result.scalars().all())

    async def search(self, q: str = None, category: str = None, min_price: int = None,
                     max_price: int = None, sort_by: str = None) -> list[ProductRecord]:
        stmt = select(ProductRecord)
        if q:
            pattern = f"%{q.lower()}%"
            stmt = stmt.where(or_(func.lower(ProductRecord.name).like(pattern),
                                  func.lower(ProductRecord.description).like(pattern)))
        if category and category != "All":
            stmt = stmt.where(ProductRecord.category == category)
        if min_price is not None:
            stmt = stmt.where(ProductRecord.price >= min_price)
        if max_price is not None:
            stmt = stmt.where(ProductRecord.price <= max_price)
        stmt = stmt.order_by(*SORT_ORDERS.get(sort_by, DEFAULT_SORT))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update(self, product_id: int, request: ProductUpdateRequest) -> ProductRecord:
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        async with self.db.session() as session:
            product = await session.get(ProductRecord, product_id)
            if product is None:
                raise NotFoundError("Product not found", details={'product_id': product_id})
            for key, value in changes.items():
                setattr(product, _PRODUCT_COLUMNS[key], getattr(value, "value", value))
            await session.commit()
            await session.refresh(product)
            return product

    async def delete(self, product_id: int) -> None:
        """Removes the product and its reviews."""
        async with self.db.session() as session:
            product = await session.get(ProductRecord, product_id)
            if product is not None:
                await session.execute(delete(ReviewRecord).where(ReviewRecord.product_id == product_id))
                await session.delete(product)
                await session.commit()
                log.info(f"[Product: {product_id}] Deleted with its reviews.")


class ReviewRepository:
    def __init__(self, database: Database):
        self.db = database

    async def _refresh_rating(self, session, product_id: int):
        result = await session.execute(
            select(func.avg(ReviewRecord.rating), func.count(ReviewRecord.id))
            .where(ReviewRecord.product_id == product_id)
        )
        average, count = result.one()
        product = await session.get(ProductRecord, product_id)
        if product is not None:
            product.average_rating = round(float(average), 2) if count else 0.0
            product.review_count = count

    async def create(self, request: ReviewCreateRequest, customer: UserRecord) -> ReviewRecord:
        async with self.db.session() as session:
            product = await session.get(ProductRecord, request.productId)
            if product is None:
                raise NotFoundError("Product not found", details={'product_id': request.productId})
            review = ReviewRecord(
                product_id=request.productId,
                customer_email=customer.email,
                customer_name=customer.name,
                rating=request.rating,
                comment=request.comment,
                verified=False,
            )
            session.add(review)
            await session.flush()
            await self._refresh_rating(session, request.productId)
            await session.commit()
            await session.refresh(review)
        return review

    async def list_for_product(self, product_id: int) -> list[ReviewRecord]:
        stmt = (select(ReviewRecord)
                .where(ReviewRecord.product_id == product_id)
                .order_by(ReviewRecord.created_at.desc(), ReviewRecord.id.desc()))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_all(self) -> list[ReviewRecord]:
        stmt = select(ReviewRecord).order_by(ReviewRecord.created_at.desc(), ReviewRecord.id.desc())
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update(self, review_id: int, request: ReviewUpdateRequest) -> ReviewRecord:
        async with self.db.session() as session:
            review = await session.get(ReviewRecord, review_id)
            if review is None:
                raise NotFoundError("Review not found", details={'review_id': review_id})
            if request.comment is not None:
                review.comment = request.comment
            if request.verified is not None:
                review.verified = request.verified
            await session.commit()
            await session.refresh(review)
            return review

    async def delete(self, review_id: int) -> None:
        async with self.db.session() as session:
            review = await session.get(ReviewRecord, review_id)
            if review is None:
                raise NotFoundError("Review not found", details={'review_id': review_id})
            product_id = review.product_id
            await session.delete(review)
            await session.flush()
            await self._refresh_rating(session, product_id)
            await session.commit()

    async def count(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(select(func.count(ReviewRecord.id)))
            return result.scalar() or 0
