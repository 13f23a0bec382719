"""Company users and per-company engine settings."""

import json
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import CompanySettings, User
from app.schemas import CompanySettingsIn, UserCreate, UserOut
from app.services.company_settings import load_engine_settings

router = APIRouter(prefix="/users", tags=["users"])
companies_router = APIRouter(prefix="/companies", tags=["companies"])


@router.post("/", response_model=UserOut, status_code=201)
async def create_user(body: UserCreate, db: AsyncSession = Depends(get_db)):
    existing = await db.execute(select(User).where(User.email == body.email))
    if existing.scalar_one_or_none():
        raise HTTPException(409, "Email already registered")
    user = User(
        company_id=body.company_id,
        email=body.email,
        full_name=body.full_name,
        roles=json.dumps(body.roles),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return UserOut.from_model(user)


@router.get("/", response_model=list[UserOut])
async def list_users(company_id: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(User).where(User.company_id == company_id).order_by(User.created_at.asc())
    )
    return [UserOut.from_model(u) for u in result.scalars().all()]


@companies_router.get("/{company_id}/settings")
async def get_company_settings(company_id: str, db: AsyncSession = Depends(get_db)):
    return {"company_id": company_id, **asdict(await load_engine_settings(db, company_id))}


@companies_router.put("/{company_id}/settings")
async def put_company_settings(company_id: str, body: CompanySettingsIn, db: AsyncSession = Depends(get_db)):
    row = await db.get(CompanySettings, company_id)
    if row is None:
        row = CompanySettings(company_id=company_id)
        db.add(row)
    for field, value in body.model_dump().items():
        setattr(row, field, value)
    await db.commit()
    return {"company_id": company_id, **asdict(await load_engine_settings(db, company_id))}
