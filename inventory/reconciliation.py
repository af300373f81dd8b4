import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from django.conf import settings
from django.db import DatabaseError, OperationalError, transaction
from django.db.models import Sum

from common.exceptions import ConsistencyError, LedgerValidationError, PersistenceError
from common.utils import ZERO
from inventory.models import Delivery, Material, Movement
from inventory.services import (
    append_movement,
    apply_movement,
    get_material,
    movement_exists_for,
    net_posted_for,
    parse_uuid,
    stock_balance_from_log,
)
from production.models import ProductionRecord

logger = logging.getLogger("ledger.repair")

SOURCE_PRODUCTION = "production"
SOURCE_DELIVERY = "delivery"
REPAIR_SOURCES = (SOURCE_PRODUCTION, SOURCE_DELIVERY)


@dataclass
class RepairResult:
    source_type: str
    dry_run: bool = False
    fixed_count: int = 0
    total_adjusted: Decimal = ZERO
    log: list = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class _Expected:
    reference_id: object
    material_id: object
    quantity: Decimal
    movement_type: str
    date: object
    label: str
    adopt_output: bool = False


def _production_expectations(material_id):
    records = ProductionRecord.objects.order_by("date", "created_at")
    for record in records:
        target = record.output_material_id or material_id
        if target is None:
            continue
        if material_id is not None and target != material_id:
            continue
        yield _Expected(
            reference_id=record.id,
            material_id=target,
            quantity=record.tons_produced,
            movement_type=Movement.Type.PRODUCTION_IN,
            date=record.date,
            label=f"production {record.id} ({record.date})",
            adopt_output=record.output_material_id is None,
        )


def _delivery_expectations(material_id):
    deliveries = Delivery.objects.live().select_related("purchase_order").order_by("date", "created_at")
    if material_id is not None:
        deliveries = deliveries.filter(purchase_order__material_id=material_id)
    for delivery in deliveries:
        yield _Expected(
            reference_id=delivery.id,
            material_id=delivery.purchase_order.material_id,
            quantity=delivery.weight_measured,
            movement_type=Movement.Type.PURCHASE,
            date=delivery.date,
            label=f"delivery {delivery.id} plate {delivery.plate} ({delivery.date})",
        )


def _post_missing(expected, quantity):
    """Post one backfill movement, re-checking the guard inside the transaction. Returns True when posted."""
    with transaction.atomic():
        if movement_exists_for(expected.reference_id, expected.material_id, expected.movement_type):
            return False
        apply_movement(expected.material_id, quantity)
        append_movement(
            expected.material_id,
            quantity,
            expected.movement_type,
            reference_id=expected.reference_id,
            date=expected.date,
            notes=f"Stock repair backfill for {expected.label}",
        )
        if expected.adopt_output:
            ProductionRecord.objects.filter(pk=expected.reference_id, output_material__isnull=True).update(
                output_material_id=expected.material_id
            )
    return True


def _post_missing_with_retries(expected, quantity):
    attempts = max(int(getattr(settings, "STOCK_REPAIR_MAX_ATTEMPTS", 3)), 1)
    for attempt in range(1, attempts + 1):
        try:
            return _post_missing(expected, quantity)
        except OperationalError as exc:
            if attempt < attempts:
                logger.warning(
                    "stock_repair_retry attempt=%s",
                    attempt,
                    extra={"reference_id": expected.reference_id, "material_id": expected.material_id},
                )
                continue
            logger.exception("stock_repair_failed", extra={"reference_id": expected.reference_id})
            raise PersistenceError() from exc
        except DatabaseError as exc:
            logger.exception("stock_repair_failed", extra={"reference_id": expected.reference_id})
            raise PersistenceError() from exc


def run_stock_repair(source_type, material_id=None, dry_run=False):
    """Backfill movements that a source record should have produced but did not.

    Safe to run repeatedly: records that already have their movement are
    skipped, so a second run reports ``fixed_count == 0``.
    """
    if source_type not in REPAIR_SOURCES:
        raise LedgerValidationError({"source_type": [f"Must be one of: {', '.join(REPAIR_SOURCES)}."]})
    if material_id not in (None, ""):
        material_id = get_material(parse_uuid(material_id, "material_id")).id
    else:
        material_id = None

    result = RepairResult(source_type=source_type, dry_run=dry_run)
    expectations = _production_expectations(material_id) if source_type == SOURCE_PRODUCTION else _delivery_expectations(material_id)

    for expected in expectations:
        if movement_exists_for(expected.reference_id, expected.material_id, expected.movement_type):
            continue

        missing = expected.quantity - net_posted_for(expected.reference_id, expected.material_id)
        if missing <= 0:
            line = f"Skipped {expected.label}: net posted already covers {expected.quantity}"
            logger.warning(line, extra={"reference_id": expected.reference_id, "material_id": expected.material_id})
            result.log.append(line)
            continue

        if dry_run:
            line = f"Would post {expected.movement_type} {missing} for {expected.label}"
        else:
            if not _post_missing_with_retries(expected, missing):
                continue
            line = f"Posted {expected.movement_type} {missing} for {expected.label}"

        logger.info(
            line,
            extra={
                "source_type": source_type,
                "reference_id": expected.reference_id,
                "material_id": expected.material_id,
                "movement_type": expected.movement_type,
                "quantity": missing,
            },
        )
        result.fixed_count += 1
        result.total_adjusted += missing
        result.log.append(line)

    logger.info(
        "stock_repair_completed fixed=%s total=%s dry_run=%s",
        result.fixed_count,
        result.total_adjusted,
        dry_run,
        extra={"source_type": source_type},
    )
    return result


def audit_stock_accounts():
    """Compare every material's cached stock with its movement log sum. Mismatches are reported, never corrected."""
    log_totals = dict(
        Movement.objects.order_by().values("material_id").annotate(total=Sum("quantity")).values_list("material_id", "total")
    )
    mismatches = []
    for material in Material.objects.order_by("name"):
        log_balance = log_totals.get(material.id) or ZERO
        if material.current_stock != log_balance:
            logger.warning(
                "stock_drift_detected material=%s current=%s log=%s",
                material.name,
                material.current_stock,
                log_balance,
                extra={"material_id": material.id},
            )
            mismatches.append(
                {
                    "material_id": material.id,
                    "material_name": material.name,
                    "current_stock": material.current_stock,
                    "log_balance": log_balance,
                    "drift": material.current_stock - log_balance,
                }
            )
    return mismatches


def verify_stock_account(material_id):
    material = get_material(material_id)
    log_balance = stock_balance_from_log(material.id)
    if material.current_stock != log_balance:
        logger.warning(
            "stock_drift_detected material=%s current=%s log=%s",
            material.name,
            material.current_stock,
            log_balance,
            extra={"material_id": material.id},
        )
        raise ConsistencyError(
            f"Stock for {material.name} is {material.current_stock} but the movement log sums to {log_balance}.",
            material_id=material.id,
            current_stock=material.current_stock,
            log_balance=log_balance,
        )
    return {"material_id": material.id, "current_stock": material.current_stock, "log_balance": log_balance, "consistent": True}
