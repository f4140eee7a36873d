"""
Company seed script

Creates the tables if needed and provisions the known brands. Safe to run
repeatedly: existing companies are matched on brand_code and updated in
place.

Usage:
    python -m scripts.seed_companies
    python -m scripts.seed_companies --deactivate-missing

Environment variables:
    DATABASE_URL: Database connection string
"""

import argparse
import logging
import sys
from pathlib import Path

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from sqlalchemy.orm import Session

from docchat.db_base import Base
from docchat.database.session import get_db_session_sync, get_engine
from docchat.models import Company

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

COMPANIES = [
    {"brand_code": "1_10", "code": "001", "name": "Documinds", "description": "Documinds"},
    {"brand_code": "2_20", "code": "056", "name": "DIESEL", "description": "Diesel"},
    {"brand_code": "5_80", "code": "041", "name": "Maison Margiela", "description": "Maison Margiela"},
    {"brand_code": "4_40", "code": "027", "name": "MARNI", "description": "Marni"},
]


def seed_companies(session: Session, deactivate_missing: bool = False) -> dict:
    """
    Upsert every entry of COMPANIES.

    Returns:
        Counts of created, updated and deactivated companies
    """
    counts = {"created": 0, "updated": 0, "deactivated": 0}
    known = {entry["brand_code"] for entry in COMPANIES}

    for entry in COMPANIES:
        company = session.query(Company).filter(
            Company.brand_code == entry["brand_code"],
        ).first()
        if company is None:
            session.add(Company(is_active=True, **entry))
            counts["created"] += 1
            continue

        company.code = entry["code"]
        company.name = entry["name"]
        company.description = entry["description"]
        company.is_active = True
        counts["updated"] += 1

    if deactivate_missing:
        for company in session.query(Company).filter(Company.is_active == True):  # noqa: E712
            if company.brand_code not in known:
                company.is_active = False
                counts["deactivated"] += 1

    session.commit()
    return counts


def main() -> int:
    parser = argparse.ArgumentParser(description="Provision brand companies")
    parser.add_argument(
        "--deactivate-missing",
        action="store_true",
        help="Deactivate companies that are not in the seed list",
    )
    args = parser.parse_args()

    Base.metadata.create_all(get_engine())

    session = next(get_db_session_sync())
    try:
        counts = seed_companies(session, deactivate_missing=args.deactivate_missing)
    finally:
        session.close()

    logger.info(
        f"Seed complete: {counts['created']} created, {counts['updated']} updated, "
        f"{counts['deactivated']} deactivated"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
