import logging
import uuid
from decimal import Decimal

from django.conf import settings
from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.db.models import F, Sum
from django.utils import timezone
from django.utils.dateparse import parse_date

from common.exceptions import LedgerValidationError, NotFoundError, PersistenceError
from common.utils import ZERO, to_quantity
from inventory.models import Material, Movement

logger = logging.getLogger("ledger.stock")

POSITIVE_TYPES = {Movement.Type.PURCHASE, Movement.Type.PRODUCTION_IN}
NEGATIVE_TYPES = {Movement.Type.PRODUCTION_OUT, Movement.Type.SALE}


def parse_uuid(value, field):
    if isinstance(value, uuid.UUID):
        return value
    if value in (None, ""):
        raise LedgerValidationError({field: ["This field is required."]})
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise LedgerValidationError({field: [f"'{value}' is not a valid UUID."]}) from exc


def parse_quantity(value, field, *, required=True):
    try:
        quantity = to_quantity(value)
    except ValueError as exc:
        raise LedgerValidationError({field: ["A valid number is required."]}) from exc
    if quantity is None and required:
        raise LedgerValidationError({field: ["This field is required."]})
    return quantity


def coerce_date(value, field="date"):
    if value in (None, ""):
        return timezone.localdate()
    if isinstance(value, str):
        parsed = parse_date(value)
        if parsed is None:
            raise LedgerValidationError({field: ["Date has wrong format. Use YYYY-MM-DD."]})
        return parsed
    return value


def validate_movement_quantity(quantity, movement_type):
    if movement_type not in Movement.Type.values:
        raise LedgerValidationError({"movement_type": [f"Unknown movement type '{movement_type}'."]})
    if quantity == 0:
        raise LedgerValidationError({"quantity": ["Movement quantity must be non-zero."]})
    if movement_type in POSITIVE_TYPES and quantity < 0:
        raise LedgerValidationError({"quantity": [f"'{movement_type}' movements must be positive."]})
    if movement_type in NEGATIVE_TYPES and quantity > 0:
        raise LedgerValidationError({"quantity": [f"'{movement_type}' movements must be negative."]})
    return quantity


def get_material(material_id):
    material = Material.objects.filter(pk=parse_uuid(material_id, "material_id")).first()
    if material is None:
        raise NotFoundError(f"Material {material_id} was not found.")
    return material


def apply_movement(material_id, signed_quantity):
    """Atomically add ``signed_quantity`` to the material's stock with a single UPDATE."""
    updated = Material.objects.filter(pk=material_id).update(
        current_stock=F("current_stock") + signed_quantity,
        updated_at=timezone.now(),
    )
    if not updated:
        raise NotFoundError(f"Material {material_id} was not found.")
    return updated


def append_movement(material_id, quantity, movement_type, reference_id=None, date=None, notes=""):
    return Movement.objects.create(
        material_id=material_id,
        quantity=quantity,
        movement_type=movement_type,
        reference_id=reference_id,
        date=coerce_date(date),
        notes=notes or "",
    )


def movement_exists_for(reference_id, material_id, movement_type=None):
    qs = Movement.objects.filter(reference_id=reference_id, material_id=material_id)
    if movement_type:
        qs = qs.filter(movement_type=movement_type)
    return qs.exists()


def net_posted_for(reference_id, material_id):
    total = Movement.objects.filter(reference_id=reference_id, material_id=material_id).aggregate(total=Sum("quantity"))["total"]
    return total or ZERO


def net_posted_by_material(reference_id):
    rows = (
        Movement.objects.filter(reference_id=reference_id)
        .order_by()
        .values("material_id")
        .annotate(total=Sum("quantity"))
    )
    return {row["material_id"]: row["total"] or ZERO for row in rows}


def stock_balance_from_log(material_id):
    return Movement.objects.filter(material_id=material_id).aggregate(total=Sum("quantity"))["total"] or ZERO


def _existing_movement(reference_id, material_id, movement_type):
    if reference_id is None or movement_type == Movement.Type.ADJUSTMENT:
        return None
    return Movement.objects.filter(reference_id=reference_id, material_id=material_id, movement_type=movement_type).first()


def _post(material_id, quantity, movement_type, reference_id, date, notes):
    existing = _existing_movement(reference_id, material_id, movement_type)
    if existing is not None:
        return existing, False

    try:
        with transaction.atomic():
            apply_movement(material_id, quantity)
            movement = append_movement(material_id, quantity, movement_type, reference_id, date, notes)
    except IntegrityError:
        # A concurrent poster inserted the same origin first.
        existing = _existing_movement(reference_id, material_id, movement_type)
        if existing is None:
            raise
        return existing, False
    return movement, True


def post_movement(*, material_id, quantity, movement_type, reference_id=None, date=None, notes=""):
    """Append a movement and apply it to the Stock Account in one transaction.

    Returns ``(movement, created)``. For every type except adjustments the
    ``(reference_id, material, movement_type)`` triple is an idempotency key:
    posting the same origin twice returns the first movement unchanged.
    Transient database errors are retried when the call owns the transaction
    and the posting is idempotent.
    """
    material_id = parse_uuid(material_id, "material_id")
    reference_id = parse_uuid(reference_id, "reference_id") if reference_id not in (None, "") else None
    quantity = validate_movement_quantity(parse_quantity(quantity, "quantity"), movement_type)
    date = coerce_date(date)

    idempotent = reference_id is not None and movement_type != Movement.Type.ADJUSTMENT
    attempts = getattr(settings, "STOCK_REPAIR_MAX_ATTEMPTS", 3) if idempotent and not transaction.get_connection().in_atomic_block else 1

    for attempt in range(1, attempts + 1):
        try:
            movement, created = _post(material_id, quantity, movement_type, reference_id, date, notes)
            break
        except OperationalError as exc:
            if attempt < attempts:
                logger.warning("movement_post_retry attempt=%s", attempt, extra={"material_id": material_id, "reference_id": reference_id})
                continue
            logger.exception("movement_post_failed", extra={"material_id": material_id, "reference_id": reference_id, "movement_type": movement_type})
            raise PersistenceError() from exc
        except DatabaseError as exc:
            logger.exception("movement_post_failed", extra={"material_id": material_id, "reference_id": reference_id, "movement_type": movement_type})
            raise PersistenceError() from exc

    if created:
        logger.info(
            "movement_posted",
            extra={"material_id": material_id, "reference_id": reference_id, "movement_type": movement_type, "quantity": quantity},
        )
    else:
        logger.info(
            "movement_already_posted",
            extra={"material_id": material_id, "reference_id": reference_id, "movement_type": movement_type},
        )
    return movement, created


def deactivate_material(material):
    if material.suppliers.filter(is_active=True).exists():
        raise LedgerValidationError({"material": ["Material is referenced by active suppliers and cannot be deactivated."]})
    material.is_active = False
    material.save(update_fields=["is_active", "updated_at"])
    return material


def material_snapshot(material):
    return {
        "id": material.id,
        "name": material.name,
        "unit": material.unit,
        "current_stock": material.current_stock,
        "min_stock_alert": material.min_stock_alert,
        "is_active": material.is_active,
    }


def movement_snapshot(movement):
    return {
        "id": movement.id,
        "material_id": movement.material_id,
        "quantity": movement.quantity,
        "movement_type": movement.movement_type,
        "reference_id": movement.reference_id,
        "date": movement.date,
        "notes": movement.notes,
    }


def is_below_alert(material):
    if material.min_stock_alert is None:
        return False
    return Decimal(material.current_stock) < Decimal(material.min_stock_alert)
