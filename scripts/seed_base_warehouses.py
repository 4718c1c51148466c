#!/usr/bin/env python3
# scripts/seed_base_warehouses.py
import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sqlalchemy import select  # noqa: E402

import orm  # noqa: E402
from crud import create_location, utcnow  # noqa: E402
from db import Base, SessionLocal, engine  # noqa: E402
from models import LocationIn  # noqa: E402

DEFAULT_WAREHOUSES = ("Rähni", "Viljandi")

logger = logging.getLogger("seed_base_warehouses")


def seed(names: list[str]) -> tuple[int, int]:
    created = 0
    flagged = 0
    db = SessionLocal()
    try:
        for name in names:
            row = db.execute(select(orm.LocationORM).where(orm.LocationORM.name == name)).scalar_one_or_none()
            if row is None:
                create_location(
                    db,
                    LocationIn(name=name, description=f"Base warehouse - {name}", is_base_warehouse=True),
                    commit=False,
                )
                created += 1
            elif not row.is_base_warehouse:
                row.is_base_warehouse = True
                row.updated_at = utcnow()
                flagged += 1
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return created, flagged


def main() -> None:
    ap = argparse.ArgumentParser(description="Ensure base warehouse locations exist (idempotent).")
    ap.add_argument("names", nargs="*", default=list(DEFAULT_WAREHOUSES), help="warehouse names")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    Base.metadata.create_all(bind=engine)

    created, flagged = seed(args.names)
    logger.info("created=%s flagged=%s", created, flagged)


if __name__ == "__main__":
    main()
