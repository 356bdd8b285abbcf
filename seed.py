"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 12 sample drivers (downtown San Francisco, mixed service classes)
  - 3 promo codes (fixed, percentage, expired)
  - presence records for the approved drivers, so ride requests can be
    matched right away
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from src.config import settings
from src.domain.enums import DriverStatus, PromoType, ServiceClass
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.models import DriverModel, PromoCodeModel
from src.infrastructure.redis_client import close_redis, get_redis
from src.services.container import build_geo_index

# Union Square (approx)
CENTER_LAT, CENTER_LNG = 37.7880, -122.4075

STANDARD = [ServiceClass.STANDARD.value]
STANDARD_XL = [ServiceClass.STANDARD.value, ServiceClass.XL.value]
PREMIUM = [ServiceClass.STANDARD.value, ServiceClass.BLACK.value]
ELECTRIC = [ServiceClass.STANDARD.value, ServiceClass.GREEN.value]

DRIVERS = [
    {"id": "driver-1", "first": "Maria", "last": "Lopez", "vehicle": ("Toyota", "Camry", "Silver"), "plate": "8ABC123", "types": STANDARD, "lat": 37.7890, "lng": -122.4080},
    {"id": "driver-2", "first": "James", "last": "Chen", "vehicle": ("Honda", "Accord", "Black"), "plate": "7XYZ456", "types": STANDARD, "lat": 37.7862, "lng": -122.4051},
    {"id": "driver-3", "first": "Aisha", "last": "Okafor", "vehicle": ("Toyota", "Sienna", "White"), "plate": "6LMN789", "types": STANDARD_XL, "lat": 37.7915, "lng": -122.4102},
    {"id": "driver-4", "first": "Daniel", "last": "Kim", "vehicle": ("Chevrolet", "Suburban", "Grey"), "plate": "9PQR321", "types": STANDARD_XL, "lat": 37.7841, "lng": -122.4120},
    {"id": "driver-5", "first": "Sofia", "last": "Rossi", "vehicle": ("Mercedes", "E-Class", "Black"), "plate": "5BLK001", "types": PREMIUM, "lat": 37.7903, "lng": -122.4009},
    {"id": "driver-6", "first": "Omar", "last": "Haddad", "vehicle": ("Lincoln", "Continental", "Black"), "plate": "5BLK002", "types": PREMIUM, "lat": 37.7795, "lng": -122.4140},
    {"id": "driver-7", "first": "Emily", "last": "Nguyen", "vehicle": ("Tesla", "Model 3", "Blue"), "plate": "8EVS100", "types": ELECTRIC, "lat": 37.7930, "lng": -122.3990},
    {"id": "driver-8", "first": "Lucas", "last": "Martin", "vehicle": ("Nissan", "Leaf", "Red"), "plate": "8EVS200", "types": ELECTRIC, "lat": 37.7760, "lng": -122.4170},
    {"id": "driver-9", "first": "Grace", "last": "Adams", "vehicle": ("Hyundai", "Elantra", "White"), "plate": "7GHI654", "types": STANDARD, "lat": 37.8010, "lng": -122.4100},
    {"id": "driver-10", "first": "Ravi", "last": "Patel", "vehicle": ("Kia", "Optima", "Grey"), "plate": "7JKL987", "types": STANDARD, "lat": 37.7650, "lng": -122.4200},
    # Not yet cleared by the background check
    {"id": "driver-11", "first": "Noah", "last": "Wright", "vehicle": ("Ford", "Fusion", "Blue"), "plate": "6MNO111", "types": STANDARD, "lat": 37.7870, "lng": -122.4060, "status": DriverStatus.PENDING},
    {"id": "driver-12", "first": "Chloe", "last": "Baker", "vehicle": ("Mazda", "6", "Red"), "plate": "6STU222", "types": STANDARD, "lat": 37.7880, "lng": -122.4070, "status": DriverStatus.SUSPENDED},
]

PROMOS = [
    {"code": "WELCOME5", "type": PromoType.FIXED, "value": 5.0, "min_fare": 10.0, "per_user_limit": 1},
    {"code": "SAVE20", "type": PromoType.PERCENT, "value": 20.0, "max_discount": 10.0, "usage_limit": 1000, "per_user_limit": 3},
    {"code": "SUMMER", "type": PromoType.PERCENT, "value": 15.0, "valid_until": datetime(2025, 9, 1, tzinfo=timezone.utc)},
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM drivers"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return []

        now = datetime.now(timezone.utc)

        # ── Drivers ───────────────────────────────────────────────────
        online = []
        for d in DRIVERS:
            status = d.get("status", DriverStatus.APPROVED)
            make, model, color = d["vehicle"]
            session.add(
                DriverModel(
                    id=d["id"],
                    first_name=d["first"],
                    last_name=d["last"],
                    vehicle_make=make,
                    vehicle_model=model,
                    vehicle_color=color,
                    license_plate=d["plate"],
                    status=status,
                    service_types=d["types"],
                    is_online=status is DriverStatus.APPROVED,
                    current_lat=d["lat"],
                    current_lng=d["lng"],
                    last_location_at=now,
                )
            )
            if status is DriverStatus.APPROVED:
                online.append(d)
        await session.flush()
        print(f"  Created {len(DRIVERS)} drivers ({len(online)} approved)")

        # ── Promo codes ───────────────────────────────────────────────
        for p in PROMOS:
            session.add(
                PromoCodeModel(
                    code=p["code"],
                    type=p["type"],
                    value=p["value"],
                    max_discount=p.get("max_discount"),
                    min_fare=p.get("min_fare"),
                    usage_limit=p.get("usage_limit"),
                    per_user_limit=p.get("per_user_limit", 1),
                    valid_until=p.get("valid_until"),
                )
            )
        await session.flush()
        print(f"  Created {len(PROMOS)} promo codes")

        await session.commit()
        return online


async def seed_presence(drivers):
    redis = await get_redis()
    try:
        geo = build_geo_index(settings, redis)
        for d in drivers:
            await geo.upsert(d["id"], d["lat"], d["lng"])
        print(f"  Indexed {len(drivers)} online drivers (valid for "
              f"{timedelta(seconds=settings.presence_ttl_seconds)})")
    finally:
        await close_redis()


async def main():
    print("Seeding database...")
    online = await seed()
    await engine.dispose()
    if online and settings.geo_backend == "redis":
        await seed_presence(online)
    print("\nSeed complete!")


if __name__ == "__main__":
    asyncio.run(main())
