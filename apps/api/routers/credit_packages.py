"""Credit package catalog router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import require_admin
from services.credit_packages import (
    create_package,
    deactivate_package,
    get_package,
    list_packages,
    serialize_package,
    update_package,
)

router = APIRouter()


class CreditPackageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    credits: int = Field(ge=1)
    price_in_cents: int = Field(ge=1)
    is_active: bool = True


class CreditPackageUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1)
    price_in_cents: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None


@router.get("")
async def list_credit_packages(
    include_inactive: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
):
    packages = await list_packages(db, include_inactive=include_inactive)
    return {"packages": [serialize_package(item) for item in packages]}


@router.get("/{package_id}")
async def get_credit_package(package_id: str, db: AsyncSession = Depends(get_db)):
    package = await get_package(package_id, db)
    return serialize_package(package)


@router.post("", status_code=201)
async def create_credit_package(
    body: CreditPackageCreate,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    package = await create_package(
        db,
        name=body.name,
        credits=body.credits,
        price_in_cents=body.price_in_cents,
        description=body.description,
        is_active=body.is_active,
    )
    return serialize_package(package)


@router.patch("/{package_id}")
async def patch_credit_package(
    package_id: str,
    body: CreditPackageUpdate,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    package = await update_package(package_id, db, body.model_dump(exclude_unset=True))
    return serialize_package(package)


@router.delete("/{package_id}")
async def delete_credit_package(
    package_id: str,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    package = await deactivate_package(package_id, db)
    return {"success": True, "package": serialize_package(package)}
