#!/usr/bin/env python
import argparse
import asyncio
import random

from faker import Faker
from sqlmodel import select

from scopegen.db import Proposal, ProposalTemplate, User, get_session, init_db

DEMO_USER_ID = "demo"

TEMPLATES = [
    {
        "trade_id": "bathroom",
        "trade_name": "Bathroom",
        "job_type_id": "bathroom-remodel",
        "job_type_name": "Full Bathroom Remodel",
        "base_scope": [
            "Remove existing fixtures, tile and vanity.",
            "Inspect subfloor and wall framing; repair minor damage.",
            "Install cement board and waterproofing membrane in wet areas.",
            "Install new tub or shower pan with tile surround.",
            "Install new vanity, countertop, sink and faucet.",
            "Install new toilet.",
            "Install tile flooring.",
            "Install exhaust fan vented to exterior.",
            "Paint walls and ceiling.",
            "Final cleanup and walkthrough.",
        ],
        "base_price_low": 12000,
        "base_price_high": 25000,
        "estimated_days_low": 7,
        "estimated_days_high": 14,
        "warranty": "2-year labor warranty on all installation work.",
        "exclusions": ["Mold remediation", "Structural repairs", "Permit fees"],
    },
    {
        "trade_id": "bathroom",
        "trade_name": "Bathroom",
        "job_type_id": "shower-replacement",
        "job_type_name": "Shower Replacement",
        "base_scope": [
            "Remove existing shower enclosure and surround.",
            "Inspect and repair wall substrate as needed.",
            "Install new shower pan and waterproofing.",
            "Install new wall surround.",
            "Replace shower valve trim and showerhead.",
            "Install new glass door or curtain rod.",
            "Caulk and seal all joints.",
            "Final cleanup.",
        ],
        "base_price_low": 4500,
        "base_price_high": 9000,
        "estimated_days_low": 2,
        "estimated_days_high": 4,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Valve relocation", "Plumbing beyond shower valve"],
    },
    {
        "trade_id": "bathroom",
        "trade_name": "Bathroom",
        "job_type_id": "tub-to-shower",
        "job_type_name": "Tub-to-Shower Conversion",
        "base_scope": [
            "Remove existing bathtub and surround.",
            "Modify drain location for shower pan.",
            "Install low-threshold shower pan.",
            "Install waterproofing and new wall surround.",
            "Install new shower valve and trim.",
            "Install glass door or curtain rod.",
            "Patch adjacent flooring and drywall.",
            "Final cleanup.",
        ],
        "base_price_low": 8500,
        "base_price_high": 12000,
        "estimated_days_low": 3,
        "estimated_days_high": 5,
        "warranty": "2-year labor warranty.",
        "exclusions": ["Subfloor replacement", "Electrical changes"],
    },
    {
        "trade_id": "kitchen",
        "trade_name": "Kitchen",
        "job_type_id": "kitchen-remodel",
        "job_type_name": "Kitchen Remodel",
        "base_scope": [
            "Complete demolition of existing cabinets and countertops.",
            "Remove existing flooring and backsplash.",
            "Install new base and wall cabinets.",
            "Install new countertops.",
            "Install new kitchen sink and faucet.",
            "Connect existing appliances.",
            "Install tile backsplash.",
            "Install new flooring.",
            "Paint walls and ceiling.",
            "Install under-cabinet lighting.",
            "Final cleanup and walkthrough.",
        ],
        "base_price_low": 25000,
        "base_price_high": 55000,
        "estimated_days_low": 10,
        "estimated_days_high": 21,
        "warranty": "2-year labor warranty.",
        "exclusions": ["Appliance costs", "Structural modifications", "Electrical panel upgrades"],
    },
    {
        "trade_id": "kitchen",
        "trade_name": "Kitchen",
        "job_type_id": "countertop-replacement",
        "job_type_name": "Countertop Replacement",
        "base_scope": [
            "Remove existing countertops.",
            "Template and fabricate new countertops.",
            "Install new countertops with seams sealed.",
            "Reconnect sink and faucet.",
            "Caulk and seal backsplash joint.",
        ],
        "base_price_low": 3500,
        "base_price_high": 8000,
        "estimated_days_low": 2,
        "estimated_days_high": 5,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Backsplash replacement", "Cabinet repairs"],
    },
    {
        "trade_id": "roofing",
        "trade_name": "Roofing",
        "job_type_id": "roof-replacement",
        "job_type_name": "Roof Replacement",
        "base_scope": [
            "Tear off existing shingles and underlayment.",
            "Inspect decking and replace damaged sheathing as needed.",
            "Install ice and water shield at eaves and valleys.",
            "Install synthetic underlayment.",
            "Install new drip edge and flashing.",
            "Install architectural shingles.",
            "Install ridge vent.",
            "Haul away debris and magnetic sweep for nails.",
        ],
        "base_price_low": 9000,
        "base_price_high": 18000,
        "estimated_days_low": 2,
        "estimated_days_high": 4,
        "warranty": "5-year workmanship warranty.",
        "exclusions": ["Sheathing beyond 2 sheets", "Gutter replacement", "Skylight replacement"],
    },
    {
        "trade_id": "siding",
        "trade_name": "Siding",
        "job_type_id": "siding-replacement",
        "job_type_name": "Siding Replacement",
        "base_scope": [
            "Remove existing siding.",
            "Inspect sheathing and repair as needed.",
            "Install house wrap.",
            "Install new siding with trim.",
            "Install new J-channel around windows and doors.",
            "Caulk and seal penetrations.",
            "Final cleanup.",
        ],
        "base_price_low": 12000,
        "base_price_high": 28000,
        "estimated_days_low": 5,
        "estimated_days_high": 10,
        "warranty": "2-year labor warranty.",
        "exclusions": ["Window replacement", "Rot repair beyond sheathing"],
    },
    {
        "trade_id": "plumbing",
        "trade_name": "Plumbing",
        "job_type_id": "water-heater",
        "job_type_name": "Water Heater Replacement",
        "base_scope": [
            "Drain and disconnect existing water heater.",
            "Remove and dispose of old unit.",
            "Install new water heater.",
            "Install new supply lines and shutoff valve.",
            "Install expansion tank if required by code.",
            "Test for leaks and proper operation.",
        ],
        "base_price_low": 1800,
        "base_price_high": 3500,
        "estimated_days_low": 1,
        "estimated_days_high": 1,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Venting modifications", "Gas line extension"],
    },
    {
        "trade_id": "electrical",
        "trade_name": "Electrical",
        "job_type_id": "panel-upgrade",
        "job_type_name": "Electrical Panel Upgrade",
        "base_scope": [
            "Coordinate utility disconnect.",
            "Remove existing electrical panel.",
            "Install new 200A panel and main breaker.",
            "Transfer and label existing circuits.",
            "Install grounding and bonding per code.",
            "Schedule inspection.",
        ],
        "base_price_low": 2500,
        "base_price_high": 5000,
        "estimated_days_low": 1,
        "estimated_days_high": 2,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Utility fees", "Service drop replacement"],
    },
    {
        "trade_id": "flooring",
        "trade_name": "Flooring",
        "job_type_id": "flooring-install",
        "job_type_name": "Flooring Installation",
        "base_scope": [
            "Remove existing flooring.",
            "Prepare and level subfloor.",
            "Install underlayment.",
            "Install new flooring.",
            "Install transitions and baseboards.",
            "Final cleanup.",
        ],
        "base_price_low": 3000,
        "base_price_high": 9000,
        "estimated_days_low": 2,
        "estimated_days_high": 5,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Flooring material", "Furniture moving"],
    },
    {
        "trade_id": "painting",
        "trade_name": "Painting",
        "job_type_id": "interior-painting",
        "job_type_name": "Interior Painting",
        "base_scope": [
            "Move and cover furniture.",
            "Patch nail holes and minor drywall damage.",
            "Caulk trim gaps.",
            "Prime repaired areas.",
            "Apply two coats to walls.",
            "Paint trim and doors.",
            "Final cleanup and touch-ups.",
        ],
        "base_price_low": 2500,
        "base_price_high": 6500,
        "estimated_days_low": 2,
        "estimated_days_high": 5,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Wallpaper removal", "Ceiling texture repair"],
    },
    {
        "trade_id": "fence",
        "trade_name": "Fencing",
        "job_type_id": "fence-install",
        "job_type_name": "Fence Installation",
        "base_scope": [
            "Locate utilities before digging.",
            "Remove existing fence if present.",
            "Set posts in concrete.",
            "Install rails and pickets.",
            "Install gate with hardware.",
            "Haul away debris.",
        ],
        "base_price_low": 3500,
        "base_price_high": 9000,
        "estimated_days_low": 2,
        "estimated_days_high": 4,
        "warranty": "1-year labor warranty.",
        "exclusions": ["Survey", "HOA approval"],
    },
]


async def seed_templates() -> int:
    created = 0
    async with get_session() as session:
        for data in TEMPLATES:
            existing = (
                await session.exec(
                    select(ProposalTemplate).where(ProposalTemplate.job_type_id == data["job_type_id"])
                )
            ).first()
            if existing:
                for field, value in data.items():
                    setattr(existing, field, value)
                session.add(existing)
            else:
                session.add(ProposalTemplate(**data))
                created += 1
        await session.commit()
    return created


async def seed_demo(fake: Faker, total: int) -> None:
    async with get_session() as session:
        user = await session.get(User, DEMO_USER_ID)
        if not user:
            user = User(
                id=DEMO_USER_ID,
                email=fake.email(),
                first_name=fake.first_name(),
                last_name=fake.last_name(),
                company_name=fake.company(),
                company_phone=fake.phone_number(),
                license_number=fake.bothify("LIC-#####"),
                proposal_credits=3,
            )
            session.add(user)

        for _ in range(total):
            template = random.choice(TEMPLATES)
            low = template["base_price_low"]
            high = template["base_price_high"]
            session.add(
                Proposal(
                    user_id=DEMO_USER_ID,
                    client_name=fake.name(),
                    address=fake.address().replace("\n", ", "),
                    trade_id=template["trade_id"],
                    job_type_id=template["job_type_id"],
                    job_type_name=template["job_type_name"],
                    scope=list(template["base_scope"]),
                    price_low=low,
                    price_high=high,
                    estimated_days_low=template["estimated_days_low"],
                    estimated_days_high=template["estimated_days_high"],
                    status=random.choice(["draft", "sent", "accepted", "won", "lost"]),
                )
            )
        await session.commit()


async def main(demo: bool = False, total: int = 10) -> None:
    await init_db()
    created = await seed_templates()
    print(f"Seeded {len(TEMPLATES)} templates ({created} new).")
    if demo:
        await seed_demo(Faker(), total)
        print(f"Seeded {total} demo proposals for user '{DEMO_USER_ID}'.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed proposal templates")
    parser.add_argument("--demo", action="store_true", help="also create a demo user with sample proposals")
    parser.add_argument("--total", type=int, default=10)
    args = parser.parse_args()
    asyncio.run(main(demo=args.demo, total=args.total))
