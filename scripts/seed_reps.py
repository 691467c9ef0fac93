# scripts/seed_reps.py
# usage: python scripts/seed_reps.py [tenant_id]
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from sqlmodel import Session, select

from leadflow.db import create_db_and_tables, engine
from leadflow.models import Representative
from leadflow.services.assignment import geocode_representative

REPS = [
    {"display_name": "Edmond Rep", "email": "edmond@example.com", "base_zip_code": "73012"},
    {"display_name": "OKC Rep", "email": "okc@example.com", "base_zip_code": "73102"},
    {"display_name": "Norman Rep", "email": "norman@example.com", "base_zip_code": "73069"},
    {"display_name": "Tulsa Rep", "email": "tulsa@example.com", "base_zip_code": "74119"},
]

tenant_id = sys.argv[1] if len(sys.argv) > 1 else "default"
create_db_and_tables()

with Session(engine) as s:
    for row in REPS:
        existing = s.exec(
            select(Representative)
            .where(Representative.tenant_id == tenant_id)
            .where(Representative.email == row["email"])
        ).first()
        if existing:
            print("rep exists:", existing.display_name, existing.base_zip_code)
            continue
        rep = Representative(tenant_id=tenant_id, role="sales_rep", status="active", **row)
        geocode_representative(rep)
        s.add(rep)
        s.commit()
        print("created rep:", rep.display_name, rep.base_zip_code, rep.base_lat, rep.base_lng)
