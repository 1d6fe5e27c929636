"""
Fulfillment calculator.

Pure function of (order, dispatch history): no session, no I/O. Works on ORM
rows or any objects exposing the same attributes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from backend.app.core.error_catalog import InvariantViolation
from backend.app.db.models.core_types import CONSUMED_DISPATCH_STATUSES, DispatchStatus
from backend.services.specs import ProductSpec, ZERO, q2


@dataclass(frozen=True)
class LineFulfillment:
    spec: ProductSpec
    ordered: Decimal
    dispatched: Decimal
    remaining: Decimal


Fulfillment = dict[ProductSpec, LineFulfillment]


def counts_as_dispatched(record) -> bool:
    """
    Records that have taken stock out of the ledger.

    Cancelled records never count. Pending/approved continuation records hold
    planned quantities only and start counting once executed.
    """
    return DispatchStatus(record.status) in CONSUMED_DISPATCH_STATUSES


def compute(order, dispatch_records: Iterable) -> Fulfillment:
    ordered: dict[ProductSpec, Decimal] = {}
    for line in order.lines:
        spec = ProductSpec.from_row(line)
        ordered[spec] = ordered.get(spec, ZERO) + q2(line.ordered_quantity)

    dispatched: dict[ProductSpec, Decimal] = {spec: ZERO for spec in ordered}
    for record in dispatch_records:
        if not counts_as_dispatched(record):
            continue
        for line in record.lines:
            spec = ProductSpec.from_row(line)
            if spec not in ordered:
                raise InvariantViolation(
                    f"Dispatch {record.human_number} carries {spec}, which is not on the order",
                    details={"dispatch": record.human_number, "spec": spec.as_dict()},
                )
            dispatched[spec] += q2(line.dispatched_quantity)

    result: Fulfillment = {}
    for spec, ordered_qty in ordered.items():
        remaining = ordered_qty - dispatched[spec]
        if remaining < ZERO:
            raise InvariantViolation(
                f"Dispatched quantity exceeds ordered quantity for {spec}",
                details={
                    "spec": spec.as_dict(),
                    "ordered": format(ordered_qty, "f"),
                    "dispatched": format(dispatched[spec], "f"),
                },
            )
        result[spec] = LineFulfillment(
            spec=spec,
            ordered=ordered_qty,
            dispatched=dispatched[spec],
            remaining=remaining,
        )
    return result


def outstanding(fulfillment: Fulfillment) -> list[LineFulfillment]:
    return [line for line in fulfillment.values() if line.remaining > ZERO]


def is_fully_dispatched(fulfillment: Fulfillment) -> bool:
    return not outstanding(fulfillment)
