#!/usr/bin/env python3
"""
Seed the database with a small, realistic hospital pharmacy data set.

Drugs, lots and a couple of transfers go through the regular services, so
every stock row has matching ledger entries and lots.

Usage:
    python scripts/seed_demo_data.py --dry-run   # print what would be created
    python scripts/seed_demo_data.py --confirm   # write to the database

Requires migrations to be applied (alembic upgrade head).
"""

import asyncio
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import User, UserRole
from src.core.config import settings
from src.core.database.session import async_session
from src.modules.drugs.models import Drug
from src.modules.drugs.schemas import DrugCreate
from src.modules.drugs.service import DrugService
from src.modules.inventory.models import Department
from src.modules.inventory.schemas import ReceiveStockRequest
from src.modules.inventory.service import InventoryService
from src.modules.transfers.schemas import (
    TransferApproveRequest,
    TransferCreate,
    TransferDispenseRequest,
    TransferItemCreate,
    TransferReceiveRequest,
)
from src.modules.transfers.workflow import TransferWorkflow
from src.shared.utils.dates import today

# username, full name, position, department, role
USERS = [
    ("0001", "Pharmacy Manager", "Chief pharmacist", Department.PHARMACY, UserRole.ADMIN),
    ("0234", "Pharmacy Student", "Pharmacist", Department.PHARMACY, UserRole.PHARMACIST),
    ("0510", "OPD Nurse", "Registered nurse", Department.OPD, UserRole.STAFF),
]

# code, name, generic name, form, strength, unit, package, price per box, category, minimum
DRUGS = [
    ("PARA500", "Paracetamol 500 mg", "Paracetamol", "TAB", "500 mg", "box", "100 tabs", "45.00", "ANALGESIC", 20),
    ("AMOX500", "Amoxicillin 500 mg", "Amoxicillin", "CAP", "500 mg", "box", "100 caps", "180.00", "ANTIBIOTIC", 10),
    ("CPM4", "Chlorpheniramine 4 mg", "Chlorpheniramine", "TAB", "4 mg", "box", "500 tabs", "95.00", "ANTIHISTAMINE", 5),
    ("ORS", "Oral rehydration salts", "ORS", "POWDER", "27.9 g", "box", "50 sachets", "120.00", "GI", 10),
    ("NSS1000", "Normal saline 1000 ml", "Sodium chloride 0.9%", "INJ", "1000 ml", "bottle", "1 bottle", "38.00", "IV_FLUID", 30),
]

# code, lot, days to expiry, quantity
LOTS = [
    ("PARA500", "PA2401", 45, 40),
    ("PARA500", "PA2409", 400, 120),
    ("AMOX500", "AM2405", 200, 35),
    ("CPM4", "CP2312", -10, 6),
    ("CPM4", "CP2411", 300, 24),
    ("ORS", "OR2407", 80, 60),
    ("NSS1000", "NS2410", 500, 200),
]

# code, requested quantity for the OPD top-up transfer
OPD_REQUEST = [("PARA500", 60), ("AMOX500", 50), ("ORS", 20)]


async def seed_users(session: AsyncSession) -> dict[str, int]:
    """Create staff accounts. Returns id by username."""
    result = await session.execute(select(User))
    existing = {u.username: u.id for u in result.scalars().all()}
    if existing:
        print("  Users already exist, skip.")
        return existing

    users = [
        User(
            username=username,
            full_name=full_name,
            position=position,
            department=department.value,
            role=role.value,
            is_active=True,
        )
        for username, full_name, position, department, role in USERS
    ]
    session.add_all(users)
    await session.commit()
    print(f"  Created {len(users)} users.")
    return {u.username: u.id for u in users}


async def seed_drugs(session: AsyncSession, user_id: int) -> dict[str, int]:
    """Create catalog drugs with empty stock in every department."""
    result = await session.execute(select(Drug.hospital_drug_code, Drug.id))
    existing = dict(result.all())
    if existing:
        print("  Drugs already exist, skip.")
        return existing

    service = DrugService(session)
    ids = {}
    for code, name, generic, form, strength, unit, package, price, category, minimum in DRUGS:
        drug = await service.create_drug(
            DrugCreate(
                hospital_drug_code=code,
                name=name,
                generic_name=generic,
                dosage_form=form,
                strength=strength,
                unit=unit,
                package_size=package,
                price_per_box=Decimal(price),
                category=category,
                minimum_stock=minimum,
            ),
            user_id,
        )
        ids[code] = drug.id
    print(f"  Created {len(ids)} drugs.")
    return ids


async def seed_lots(session: AsyncSession, drug_ids: dict[str, int], user_id: int) -> None:
    service = InventoryService(session)
    for code, lot_number, days, quantity in LOTS:
        await service.receive(
            ReceiveStockRequest(
                drug_id=drug_ids[code],
                department=Department.PHARMACY,
                lot_number=lot_number,
                expiry_date=today() + timedelta(days=days),
                manufacturer="GPO",
                quantity=quantity,
                note="Opening balance (demo)",
            ),
            user_id,
        )
    print(f"  Received {len(LOTS)} lots into {Department.PHARMACY.value}.")


async def seed_transfer(
    session: AsyncSession, drug_ids: dict[str, int], requester_id: int, pharmacist_id: int
) -> None:
    """One OPD top-up taken through the whole workflow (amoxicillin ends short)."""
    workflow = TransferWorkflow(session)
    transfer = await workflow.create(
        TransferCreate(
            title="Weekly OPD top-up",
            purpose="Routine replenishment",
            destination_department=Department.OPD,
            items=[
                TransferItemCreate(drug_id=drug_ids[code], requested_quantity=quantity)
                for code, quantity in OPD_REQUEST
            ],
        ),
        requester_id,
    )
    await workflow.approve(transfer.id, TransferApproveRequest(), pharmacist_id)
    await workflow.dispense(transfer.id, TransferDispenseRequest(), pharmacist_id)
    transfer = await workflow.receive(transfer.id, TransferReceiveRequest(), requester_id)
    print(f"  Transfer {transfer.requisition_number}: {transfer.status}.")


async def run_seed(session: AsyncSession) -> None:
    user_ids = await seed_users(session)
    pharmacist_id = user_ids["0234"]
    drug_ids = await seed_drugs(session, pharmacist_id)
    if len(drug_ids) == len(DRUGS) and "0510" in user_ids:
        await seed_lots(session, drug_ids, pharmacist_id)
        await seed_transfer(session, drug_ids, user_ids["0510"], pharmacist_id)
    print("\nSeed completed successfully.")


def print_plan() -> None:
    print(f"  {len(USERS)} users, {len(DRUGS)} drugs, {len(LOTS)} lots")
    for code, quantity in OPD_REQUEST:
        print(f"  OPD request: {code} x {quantity}")
    print("\n[DRY-RUN] Nothing written.")


async def main() -> None:
    import argparse
    parser = argparse.ArgumentParser(description="Seed database with hospital pharmacy demo data")
    parser.add_argument("--dry-run", action="store_true", help="Only print the plan")
    parser.add_argument("--confirm", action="store_true", help="Write to the database")
    args = parser.parse_args()
    if not args.dry_run and not args.confirm:
        print("Use --dry-run or --confirm")
        sys.exit(1)

    print("Database:", settings.database_url.split("@")[-1] if "@" in settings.database_url else "?")
    print("Mode:", "DRY-RUN" if args.dry_run else "CONFIRM")
    if args.dry_run:
        print_plan()
        return
    async with async_session() as session:
        await run_seed(session)
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())
