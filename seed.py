"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - the default matching config and penalty matrix (if missing)
  - 12 verified captains around Bengaluru's MG Road, one vehicle each
    (mix of bike / auto / cab), 10 of them online
  - 3 pending ride requests ready for POST /api/v1/dispatch/match
"""

import asyncio

from sqlalchemy import func, select

from src.domain.enums import CaptainStatus, VehicleType
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.models import CaptainModel
from src.infrastructure.reference_data import install_reference_data
from src.infrastructure.repositories import CaptainRepository, RideRepository

# MG Road, Bengaluru (approx)
CENTER_LAT, CENTER_LNG = 12.9756, 77.6050


CAPTAINS = [
    # name, vehicle type, make, model, lat, lng, rating, online
    ("Ravi Kumar", VehicleType.CAB, "Maruti", "Dzire", 12.9760, 77.6055, 4.8, True),
    ("Suresh Babu", VehicleType.CAB, "Hyundai", "Aura", 12.9790, 77.6010, 4.6, True),
    ("Manjunath R", VehicleType.CAB, "Toyota", "Etios", 12.9700, 77.6100, 4.9, True),
    ("Imran Khan", VehicleType.CAB, "Honda", "Amaze", 12.9850, 77.6150, 4.3, True),
    ("Prakash N", VehicleType.CAB, "Maruti", "Ertiga", 12.9600, 77.5950, 4.7, False),
    ("Lokesh G", VehicleType.AUTO, "Bajaj", "RE", 12.9745, 77.6070, 4.5, True),
    ("Venkatesh S", VehicleType.AUTO, "Piaggio", "Ape", 12.9770, 77.6020, 4.4, True),
    ("Arun Raj", VehicleType.AUTO, "TVS", "King", 12.9800, 77.6120, 4.6, True),
    ("Kiran M", VehicleType.BIKE, "Honda", "Activa", 12.9758, 77.6045, 4.9, True),
    ("Deepak V", VehicleType.BIKE, "TVS", "Jupiter", 12.9730, 77.6080, 4.2, True),
    ("Naveen P", VehicleType.BIKE, "Hero", "Splendor", 12.9900, 77.6200, 4.7, True),
    ("Santosh H", VehicleType.BIKE, "Bajaj", "Pulsar", 12.9650, 77.5900, 4.8, False),
]

RIDES = [
    # rider, vehicle type, pickup, drop, fare
    (1001, VehicleType.CAB, (12.9756, 77.6050), (12.9352, 77.6245), 240.0),  # Koramangala
    (1002, VehicleType.AUTO, (12.9760, 77.6040), (12.9719, 77.6412), 120.0),  # Indiranagar
    (1003, VehicleType.BIKE, (12.9750, 77.6060), (12.9141, 77.6101), 90.0),  # BTM
]


async def seed():
    async with async_session_factory() as session:
        if await install_reference_data(session):
            print("  Installed default matching config and penalty rules")

        # Check if already seeded
        result = await session.execute(select(func.count()).select_from(CaptainModel))
        if result.scalar() > 0:
            await session.commit()
            print("Captains already seeded. Skipping.")
            return

        # ── Captains + vehicles ───────────────────────────────────────
        captains = CaptainRepository(session)
        for i, (name, vtype, make, model, lat, lng, rating, online) in enumerate(
            CAPTAINS, start=1
        ):
            captain = await captains.create_captain(
                name=name,
                user_id=5000 + i,
                phone=f"+91-98450-{i:05d}",
                is_verified=True,
                status=CaptainStatus.ONLINE if online else CaptainStatus.OFFLINE,
                rating=rating,
                current_lat=lat,
                current_lng=lng,
            )
            await captains.add_vehicle(
                captain_id=captain.id,
                vehicle_type=vtype,
                make=make,
                model=model,
                registration_number=f"KA-01-AB-{1000 + i}",
            )
        print(f"  Created {len(CAPTAINS)} captains")

        # ── Rides ─────────────────────────────────────────────────────
        rides = RideRepository(session)
        for rider_id, vtype, pickup, drop, fare in RIDES:
            await rides.create_ride(
                rider_id=rider_id,
                vehicle_type=vtype,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                drop_lat=drop[0],
                drop_lng=drop[1],
                estimated_fare=fare,
            )
        print(f"  Created {len(RIDES)} pending rides")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
