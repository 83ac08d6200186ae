# Overview: Reconciliation/audit engine; replays the ledger against the denormalized stock counter.

"""
Audit Semantics (authoritative)

Replay:
- expected_stock = SUM(quantity) over a variant's movements, from a zero baseline,
  ordered by (occurred_at, id).
- drift = actual_stock - expected_stock. Any nonzero drift means something
  wrote Variant.stock outside the Movement Recorder.

Chain:
- In insertion order, each movement must satisfy new = previous + quantity and
  start from the previous movement's new_stock (the first starts from 0).

Stockouts:
- A stockout is any movement whose new_stock = 0.
- Its recovery is the earliest RESTOCK strictly after it by (occurred_at, id).
- days_out_of_stock = ceil(elapsed days); None while still out of stock.

Sweeps read in bounded chunks. A failed or slow chunk is logged and skipped;
the sweep carries on with the next chunk.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..errors import ChunkTimeout
from ..models import MovementType, StockMovement, Variant
from stockledger.time_utils import ceil_days_between, to_utc_z
from .movement_service import get_variant


@dataclass
class ChainBreak:
    movement_id: int
    expected_previous_stock: int
    previous_stock: int
    quantity: int
    new_stock: int

    def to_dict(self) -> dict:
        return {
            "movement_id": self.movement_id,
            "expected_previous_stock": self.expected_previous_stock,
            "previous_stock": self.previous_stock,
            "quantity": self.quantity,
            "new_stock": self.new_stock,
        }


@dataclass
class AuditResult:
    variant_id: int
    expected_stock: int
    actual_stock: int
    movement_count: int
    chain_breaks: list[ChainBreak] = field(default_factory=list)

    @property
    def drift(self) -> int:
        return self.actual_stock - self.expected_stock

    @property
    def is_consistent(self) -> bool:
        return self.drift == 0 and not self.chain_breaks

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "expected_stock": self.expected_stock,
            "actual_stock": self.actual_stock,
            "drift": self.drift,
            "movement_count": self.movement_count,
            "is_consistent": self.is_consistent,
            "chain_breaks": [b.to_dict() for b in self.chain_breaks],
        }


@dataclass
class Stockout:
    movement_id: int
    stockout_at: datetime
    next_restock_at: datetime | None
    days_out_of_stock: int | None
    restock_quantity: int | None

    @property
    def still_out_of_stock(self) -> bool:
        return self.next_restock_at is None

    def to_dict(self) -> dict:
        return {
            "movement_id": self.movement_id,
            "stockout_at": to_utc_z(self.stockout_at),
            "next_restock_at": to_utc_z(self.next_restock_at),
            "days_out_of_stock": self.days_out_of_stock,
            "restock_quantity": self.restock_quantity,
            "still_out_of_stock": self.still_out_of_stock,
        }


@dataclass
class SweepReport:
    audited: int = 0
    drifted: list[AuditResult] = field(default_factory=list)
    failed_chunks: list[dict] = field(default_factory=list)
    chunks: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.drifted and not self.failed_chunks

    def to_dict(self) -> dict:
        return {
            "audited": self.audited,
            "chunks": self.chunks,
            "drifted": [r.to_dict() for r in self.drifted],
            "failed_chunks": self.failed_chunks,
            "is_clean": self.is_clean,
        }


def _movements_in_insertion_order(variant_id: int) -> list[StockMovement]:
    return db.session.query(StockMovement).filter_by(
        variant_id=variant_id
    ).order_by(StockMovement.id.asc()).all()


def replay_stock(variant_id: int, as_of: datetime | None = None) -> int:
    """Stock implied by the ledger, optionally as-of an inclusive event time."""
    q = db.session.query(StockMovement.quantity).filter(StockMovement.variant_id == variant_id)
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= as_of)
    total = 0
    for (quantity,) in q.order_by(StockMovement.occurred_at.asc(), StockMovement.id.asc()):
        total += quantity
    return total


def _find_chain_breaks(movements: list[StockMovement]) -> list[ChainBreak]:
    breaks = []
    running = 0
    for m in movements:
        if m.previous_stock != running or m.new_stock != m.previous_stock + m.quantity:
            breaks.append(ChainBreak(
                movement_id=m.id,
                expected_previous_stock=running,
                previous_stock=m.previous_stock,
                quantity=m.quantity,
                new_stock=m.new_stock,
            ))
        running = m.new_stock
    return breaks


def audit_variant(variant_id: int) -> AuditResult:
    """Compare a variant's stored stock to the replay of its movements."""
    variant = get_variant(variant_id)
    movements = _movements_in_insertion_order(variant_id)

    return AuditResult(
        variant_id=variant.id,
        expected_stock=replay_stock(variant_id),
        actual_stock=variant.stock,
        movement_count=len(movements),
        chain_breaks=_find_chain_breaks(movements),
    )


# =============================================================================
# STOCKOUTS
# =============================================================================

def _next_restock_after(movement: StockMovement) -> StockMovement | None:
    return db.session.query(StockMovement).filter(
        StockMovement.variant_id == movement.variant_id,
        StockMovement.type == MovementType.RESTOCK,
        or_(
            StockMovement.occurred_at > movement.occurred_at,
            and_(
                StockMovement.occurred_at == movement.occurred_at,
                StockMovement.id > movement.id,
            ),
        ),
    ).order_by(
        StockMovement.occurred_at.asc(),
        StockMovement.id.asc(),
    ).first()


def find_stockouts(variant_id: int) -> list[Stockout]:
    """Every time the variant hit zero, paired with the restock that ended it."""
    get_variant(variant_id)

    zero_hits = db.session.query(StockMovement).filter(
        StockMovement.variant_id == variant_id,
        StockMovement.new_stock == 0,
    ).order_by(
        StockMovement.occurred_at.asc(),
        StockMovement.id.asc(),
    ).all()

    stockouts = []
    for hit in zero_hits:
        restock = _next_restock_after(hit)
        stockouts.append(Stockout(
            movement_id=hit.id,
            stockout_at=hit.occurred_at,
            next_restock_at=restock.occurred_at if restock else None,
            days_out_of_stock=ceil_days_between(hit.occurred_at, restock.occurred_at) if restock else None,
            restock_quantity=restock.quantity if restock else None,
        ))
    return stockouts


def stockout_summary(variant_id: int) -> dict:
    history = find_stockouts(variant_id)
    recovered = [s.days_out_of_stock for s in history if s.days_out_of_stock is not None]
    avg_days = sum(recovered) / len(recovered) if recovered else 0

    return {
        "variant_id": variant_id,
        "total_stockouts": len(history),
        "avg_days_out_of_stock": round(avg_days, 1),
        "history": [s.to_dict() for s in history],
    }


# =============================================================================
# SWEEP AUDIT
# =============================================================================

def _audit_chunk(variant_ids: list[int], *, deadline: float) -> list[AuditResult]:
    results = []
    for variant_id in variant_ids:
        if time.monotonic() > deadline:
            raise ChunkTimeout(
                f"Audit chunk exceeded its time limit at variant {variant_id}",
                details={"variant_id": variant_id},
            )
        results.append(audit_variant(variant_id))
    return results


def sweep_audit(*, chunk_size: int | None = None, time_limit_seconds: float | None = None) -> SweepReport:
    """
    Audit every variant, chunk by chunk.

    Read-only. Each chunk ends its read transaction so no chunk holds the
    database for longer than its time ceiling.
    """
    if chunk_size is None:
        chunk_size = current_app.config.get("LEDGER_BULK_CHUNK_SIZE", 50)
    if time_limit_seconds is None:
        time_limit_seconds = current_app.config.get("LEDGER_CHUNK_TIME_LIMIT_SECONDS", 30.0)

    report = SweepReport()
    last_id = 0

    while True:
        ids = [row[0] for row in db.session.query(Variant.id).filter(
            Variant.id > last_id
        ).order_by(Variant.id.asc()).limit(chunk_size).all()]
        if not ids:
            break
        last_id = ids[-1]
        report.chunks += 1

        try:
            results = _audit_chunk(ids, deadline=time.monotonic() + time_limit_seconds)
        except Exception as exc:
            current_app.logger.exception("Audit chunk %d (variants %s..%s) failed", report.chunks, ids[0], ids[-1])
            report.failed_chunks.append({
                "chunk": report.chunks,
                "first_variant_id": ids[0],
                "last_variant_id": ids[-1],
                "error": str(exc),
            })
            continue
        finally:
            db.session.rollback()

        report.audited += len(results)
        for result in results:
            if not result.is_consistent:
                current_app.logger.warning(
                    "Stock drift on variant %s: stored %s, ledger %s, chain breaks %d",
                    result.variant_id, result.actual_stock, result.expected_stock, len(result.chain_breaks),
                )
                report.drifted.append(result)

    return report
