# Overview: Bulk synthetic history generator; drives the public ledger operations in bounded chunks.

"""
Simulation rules:
- Goes through record_movement / record_sale / refund_* with commit=False.
  There is no private write path: every invariant the recorder enforces
  applies here too.
- Sale quantities are sized from the variant's current stock; a day with
  zero stock simply sells nothing. The recorder's strict non-negative check
  is never bypassed or pre-clamped.
- Restocks arrive a random number of days after stock drops to the reorder
  point, so the generated history contains real stockouts.
- Each chunk of products is one DB transaction. A chunk that fails or runs
  past its time ceiling is rolled back and logged; committed chunks stay.
"""

from __future__ import annotations

import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..errors import ChunkTimeout
from ..models import MovementType, Product, REFUNDABLE_STATUSES
from stockledger.time_utils import utcnow
from .movement_service import create_variant, record_movement
from .refund_service import refund_items, refund_transaction
from .sales_service import record_sale


@dataclass
class SeedReport:
    products_created: int = 0
    variants_created: int = 0
    movements_created: int = 0
    sales_created: int = 0
    refunds_created: int = 0
    chunks_committed: int = 0
    failed_chunks: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "products_created": self.products_created,
            "variants_created": self.variants_created,
            "movements_created": self.movements_created,
            "sales_created": self.sales_created,
            "refunds_created": self.refunds_created,
            "chunks_committed": self.chunks_committed,
            "failed_chunks": self.failed_chunks,
        }


@dataclass
class _ChunkCounts:
    products: int = 0
    variants: int = 0
    movements: int = 0
    sales: int = 0
    refunds: int = 0


class _Clock:
    """Strictly increasing event times within one simulated day."""

    def __init__(self, start: datetime):
        self.start = start
        self.minute = 0

    def at(self, day: int) -> datetime:
        self.minute += 1
        return self.start + timedelta(days=day, minutes=9 * 60 + self.minute)


def _check_deadline(deadline: float, where: str) -> None:
    if time.monotonic() > deadline:
        raise ChunkTimeout(f"Seed chunk exceeded its time limit at {where}", details={"at": where})


def _simulate_variant(variant, *, rng: random.Random, start: datetime, days: int, counts: _ChunkCounts, deadline: float):
    clock = _Clock(start)
    restock_due: int | None = None
    sales = []

    for day in range(1, days):
        _check_deadline(deadline, f"variant {variant.id} day {day}")

        if restock_due == day:
            record_movement(
                variant.id,
                MovementType.RESTOCK,
                rng.randint(variant.reorder_point + 5, variant.reorder_point * 4 + 10),
                reason="Supplier delivery",
                occurred_at=clock.at(day),
                commit=False,
            )
            counts.movements += 1
            restock_due = None

        for _ in range(rng.randint(0, 3)):
            quantity = min(rng.randint(1, 3), variant.stock)
            if quantity <= 0:
                break
            discounted = rng.random() < 0.1
            sale = record_sale(
                [{
                    "variant_id": variant.id,
                    "quantity": quantity,
                    "unit_price_cents": variant.price_cents,
                    "final_price_cents": (variant.price_cents * 9) // 10 if discounted else None,
                }],
                occurred_at=clock.at(day),
                commit=False,
            )
            sales.append(sale)
            counts.sales += 1
            counts.movements += 1

        if variant.stock > 0 and rng.random() < 0.02:
            record_movement(
                variant.id,
                MovementType.SHRINKAGE,
                -1,
                reason="damaged",
                occurred_at=clock.at(day),
                commit=False,
            )
            counts.movements += 1

        if sales and rng.random() < 0.05:
            sale = rng.choice(sales)
            if sale.status in REFUNDABLE_STATUSES:
                line = sale.items[0]
                if rng.random() < 0.5 and line.refundable_quantity > 1:
                    refund_items(
                        sale.id,
                        [{"sale_item_id": line.id, "quantity_to_refund": rng.randint(1, line.refundable_quantity - 1)}],
                        occurred_at=clock.at(day),
                        commit=False,
                    )
                else:
                    refund_transaction(sale.id, occurred_at=clock.at(day), commit=False)
                counts.refunds += 1
                counts.movements += 1

        if restock_due is None and variant.is_below_reorder_point:
            restock_due = day + rng.randint(1, 6)


def _generate_chunk(
    product_numbers: list[int],
    *,
    rng: random.Random,
    batch_tag: str,
    variants_per_product: int,
    start: datetime,
    days: int,
    deadline: float,
) -> _ChunkCounts:
    counts = _ChunkCounts()
    for number in product_numbers:
        product = Product(name=f"Simulated Product {number}", sku=f"SIM-{batch_tag}-{number:04d}")
        db.session.add(product)
        db.session.flush()
        counts.products += 1

        for v in range(variants_per_product):
            reorder_point = rng.randint(3, 10)
            initial_stock = rng.randint(reorder_point, reorder_point * 4)
            variant = create_variant(
                product_id=product.id,
                sku=f"{product.sku}-V{v + 1}",
                price_cents=rng.randint(5, 200) * 100 - 1,
                initial_stock=initial_stock,
                reorder_point=reorder_point,
                occurred_at=start,
                commit=False,
            )
            counts.variants += 1
            counts.movements += 1
            _simulate_variant(variant, rng=rng, start=start, days=days, counts=counts, deadline=deadline)
    return counts


def generate_history(
    *,
    products: int = 10,
    variants_per_product: int = 3,
    days: int = 90,
    seed: int | None = None,
    chunk_size: int | None = None,
    time_limit_seconds: float | None = None,
) -> SeedReport:
    """
    Create products/variants and simulate `days` of ledger history.

    chunk_size counts products per transaction.
    """
    if chunk_size is None:
        chunk_size = current_app.config.get("LEDGER_BULK_CHUNK_SIZE", 50)
    if time_limit_seconds is None:
        time_limit_seconds = current_app.config.get("LEDGER_CHUNK_TIME_LIMIT_SECONDS", 30.0)

    rng = random.Random(seed)
    batch_tag = uuid.uuid4().hex[:6].upper()
    start = (utcnow() - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
    report = SeedReport()

    numbers = list(range(1, products + 1))
    for offset in range(0, len(numbers), chunk_size):
        chunk = numbers[offset:offset + chunk_size]
        try:
            counts = _generate_chunk(
                chunk,
                rng=rng,
                batch_tag=batch_tag,
                variants_per_product=variants_per_product,
                start=start,
                days=days,
                deadline=time.monotonic() + time_limit_seconds,
            )
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("Seed chunk for products %s..%s failed", chunk[0], chunk[-1])
            report.failed_chunks.append({
                "first_product": chunk[0],
                "last_product": chunk[-1],
                "error": str(exc),
            })
            continue

        report.chunks_committed += 1
        report.products_created += counts.products
        report.variants_created += counts.variants
        report.movements_created += counts.movements
        report.sales_created += counts.sales
        report.refunds_created += counts.refunds
        current_app.logger.info(
            "Seed chunk committed: %d products, %d movements", counts.products, counts.movements
        )

    return report
