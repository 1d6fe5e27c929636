from __future__ import annotations

from decimal import Decimal

from backend.app.db.session import SessionLocal
from backend.app.db.models.core_types import ProductType
from backend.services.locking import locked_transaction
from backend.services.specs import ProductSpec
from backend.services.stock_ledger import StockLedger

# (type, size, thickness mm, opening tons)
OPENING_STOCK = [
    (ProductType.square_tubes, "40x40", "2.00", "120"),
    (ProductType.square_tubes, "50x50", "2.50", "80"),
    (ProductType.rectangular_tubes, "60x40", "2.00", "60"),
    (ProductType.round_tubes, "48.3", "3.20", "150"),
    (ProductType.oval_tubes, "30x15", "1.20", "25"),
]


def run_seed():
    db = SessionLocal()
    try:
        ledger = StockLedger(db)
        existing = {ProductSpec.from_row(e) for e in ledger.list_entries(include_inactive=True)}
        created = 0
        for ptype, size, thickness, opening in OPENING_STOCK:
            spec = ProductSpec.of(ptype, size, thickness)
            if spec in existing:
                continue
            with locked_transaction(db, specs=[spec]):
                ledger.create_entry(spec, available_quantity=Decimal(opening), reference="SEED")
            created += 1

        print(f"SEED OK: {created} stock entries created")
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
