"""Credit package catalog."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_package import CreditPackage
from services.errors import CreditPackageNotFound, DuplicateCreditPackage


def serialize_package(package: CreditPackage) -> Dict[str, Any]:
    return {
        "id": package.id,
        "name": package.name,
        "description": package.description,
        "credits": package.credits,
        "priceInCents": package.price_in_cents,
        "isActive": package.is_active,
    }


async def list_packages(db: AsyncSession, *, include_inactive: bool = False) -> List[CreditPackage]:
    query = select(CreditPackage).order_by(CreditPackage.price_in_cents.asc())
    if not include_inactive:
        query = query.where(CreditPackage.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_package(package_id: str, db: AsyncSession) -> CreditPackage:
    package = await db.get(CreditPackage, package_id)
    if package is None:
        raise CreditPackageNotFound("Credit package not found")
    return package


async def _ensure_unique_name(name: str, db: AsyncSession, exclude_id: Optional[str] = None) -> None:
    query = select(CreditPackage.id).where(CreditPackage.name == name)
    if exclude_id:
        query = query.where(CreditPackage.id != exclude_id)
    result = await db.execute(query)
    if result.scalar_one_or_none():
        raise DuplicateCreditPackage("A credit package with this name already exists")


async def create_package(
    db: AsyncSession,
    *,
    name: str,
    credits: int,
    price_in_cents: int,
    description: Optional[str] = None,
    is_active: bool = True,
) -> CreditPackage:
    await _ensure_unique_name(name, db)
    package = CreditPackage(
        name=name,
        description=description,
        credits=int(credits),
        price_in_cents=int(price_in_cents),
        is_active=is_active,
    )
    db.add(package)
    await db.commit()
    return package


async def update_package(package_id: str, db: AsyncSession, changes: Dict[str, Any]) -> CreditPackage:
    package = await get_package(package_id, db)
    name = changes.get("name")
    if name and name != package.name:
        await _ensure_unique_name(name, db, exclude_id=package_id)
    for field in ("name", "description", "credits", "price_in_cents", "is_active"):
        if field in changes and changes[field] is not None:
            setattr(package, field, changes[field])
    await db.commit()
    return package


async def deactivate_package(package_id: str, db: AsyncSession) -> CreditPackage:
    """Soft delete: existing checkout sessions keep referencing the package."""
    package = await get_package(package_id, db)
    package.is_active = False
    await db.commit()
    return package
