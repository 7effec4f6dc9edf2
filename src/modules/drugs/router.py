"""API endpoints for Drugs module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import ALL_ROLES, PHARMACY_ROLES, require_roles
from src.core.auth.models import User
from src.core.database.session import get_db
from src.modules.drugs.schemas import (
    DrugCreate,
    DrugPriceUpdate,
    DrugPriceUpdateResponse,
    DrugResponse,
)
from src.modules.drugs.service import DrugService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/drugs", tags=["Drugs"])


@router.post(
    "",
    response_model=ApiResponse[DrugResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_drug(
    data: DrugCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Add a drug to the catalog with stock rows for every department."""
    drug = await DrugService(db).create_drug(data, current_user.id)
    return ApiResponse(
        success=True,
        data=DrugResponse.model_validate(drug),
        message="Drug created",
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[DrugResponse]],
)
async def list_drugs(
    search: str | None = Query(None),
    active_only: bool = Query(True),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """List catalog entries."""
    drugs, total = await DrugService(db).list_drugs(
        search=search, active_only=active_only, page=page, limit=limit
    )
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[DrugResponse.model_validate(d) for d in drugs],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/{drug_id}",
    response_model=ApiResponse[DrugResponse],
)
async def get_drug(
    drug_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Get a drug by ID."""
    drug = await DrugService(db).get_drug(drug_id)
    return ApiResponse(success=True, data=DrugResponse.model_validate(drug))


@router.patch(
    "/{drug_id}/price",
    response_model=ApiResponse[DrugPriceUpdateResponse],
)
async def update_drug_price(
    drug_id: int,
    data: DrugPriceUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Change the price and revalue the drug's stock in every department."""
    change = await DrugService(db).update_price(
        drug_id, data.price_per_box, current_user.id, data.note
    )
    return ApiResponse(
        success=True,
        data=DrugPriceUpdateResponse(
            drug=DrugResponse.model_validate(change.drug),
            price_changed=change.changed,
            old_price=change.old_price,
            new_price=change.new_price,
            revalued_stock_ids=[s.id for s in change.stocks],
        ),
        message="Price updated" if change.changed else "Price unchanged",
    )
