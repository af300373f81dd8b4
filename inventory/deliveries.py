import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from common.exceptions import LedgerValidationError, NotFoundError, PersistenceError
from inventory.models import Delivery, Movement, PurchaseOrder
from inventory.services import coerce_date, parse_quantity, parse_uuid, post_movement

logger = logging.getLogger("ledger.deliveries")

UPDATABLE_FIELDS = ("plate", "weight_measured", "weight_fiscal", "driver_name", "date")


def _clean_plate(value):
    return (value or "").strip().upper()


def _validate_weights(weight_measured, weight_fiscal, *, measured_required=True):
    errors = {}
    measured = fiscal = None
    try:
        measured = parse_quantity(weight_measured, "weight_measured", required=measured_required)
    except LedgerValidationError as exc:
        errors.update(exc.detail)
    else:
        if measured is not None and measured <= 0:
            errors["weight_measured"] = ["Measured weight must be greater than zero."]
    try:
        fiscal = parse_quantity(weight_fiscal, "weight_fiscal", required=False)
    except LedgerValidationError as exc:
        errors.update(exc.detail)
    else:
        if fiscal is not None and fiscal < 0:
            errors["weight_fiscal"] = ["Fiscal weight cannot be negative."]
    return measured, fiscal, errors


def get_purchase_order(order_id):
    order = PurchaseOrder.objects.select_related("supplier", "material").filter(pk=parse_uuid(order_id, "order_id")).first()
    if order is None:
        raise NotFoundError(f"Purchase order {order_id} was not found.")
    return order


def get_delivery(delivery_id, *, include_deleted=False):
    qs = Delivery.objects.select_related("purchase_order__material", "purchase_order__supplier")
    if not include_deleted:
        qs = qs.live()
    delivery = qs.filter(pk=parse_uuid(delivery_id, "delivery_id")).first()
    if delivery is None:
        raise NotFoundError(f"Delivery {delivery_id} was not found.")
    return delivery


def list_deliveries(order_id):
    order = get_purchase_order(order_id)
    return list(order.deliveries.live().order_by("-date", "-created_at"))


def create_delivery(order_id, plate, weight_measured, weight_fiscal=None, driver_name="", date=None):
    errors = {}
    if order_id in (None, ""):
        errors["order_id"] = ["This field is required."]
    plate = _clean_plate(plate)
    if not plate:
        errors["plate"] = ["This field is required."]
    measured, fiscal, weight_errors = _validate_weights(weight_measured, weight_fiscal)
    errors.update(weight_errors)
    if errors:
        raise LedgerValidationError(errors)

    order = get_purchase_order(order_id)
    if order.status == PurchaseOrder.Status.CANCELLED:
        raise LedgerValidationError({"order_id": ["Deliveries cannot be registered against a cancelled order."]})
    date = coerce_date(date)

    try:
        with transaction.atomic():
            delivery = Delivery.objects.create(
                purchase_order=order,
                plate=plate,
                weight_measured=measured,
                weight_fiscal=fiscal,
                driver_name=(driver_name or "").strip(),
                date=date,
            )
            post_movement(
                material_id=order.material_id,
                quantity=measured,
                movement_type=Movement.Type.PURCHASE,
                reference_id=delivery.id,
                date=date,
                notes=f"Scale inbound, plate {plate}",
            )
    except DatabaseError as exc:
        logger.exception("delivery_create_failed", extra={"order_id": order.id})
        raise PersistenceError() from exc

    logger.info(
        "delivery_created",
        extra={"delivery_id": delivery.id, "order_id": order.id, "material_id": order.material_id, "quantity": measured},
    )
    return delivery


def update_delivery(delivery_id, **fields):
    """Edit a delivery. A measured-weight change posts the delta as an adjustment; other fields never touch stock."""
    unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if unknown:
        raise LedgerValidationError({field: ["This field cannot be updated."] for field in unknown})

    errors = {}
    changes = {}
    if "plate" in fields:
        changes["plate"] = _clean_plate(fields["plate"])
        if not changes["plate"]:
            errors["plate"] = ["This field may not be blank."]
    if "driver_name" in fields:
        changes["driver_name"] = (fields["driver_name"] or "").strip()
    if "weight_measured" in fields or "weight_fiscal" in fields:
        measured, fiscal, weight_errors = _validate_weights(
            fields.get("weight_measured"),
            fields.get("weight_fiscal"),
            measured_required="weight_measured" in fields,
        )
        errors.update(weight_errors)
        if "weight_measured" in fields:
            changes["weight_measured"] = measured
        if "weight_fiscal" in fields:
            changes["weight_fiscal"] = fiscal
    if "date" in fields:
        try:
            changes["date"] = coerce_date(fields["date"])
        except LedgerValidationError as exc:
            errors.update(exc.detail)
    if errors:
        raise LedgerValidationError(errors)

    delivery_id = parse_uuid(delivery_id, "delivery_id")
    try:
        with transaction.atomic():
            delivery = Delivery.objects.select_for_update().live().filter(pk=delivery_id).first()
            if delivery is None:
                raise NotFoundError(f"Delivery {delivery_id} was not found.")
            old_measured = delivery.weight_measured
            for field, value in changes.items():
                setattr(delivery, field, value)
            delivery.save()

            delta = delivery.weight_measured - old_measured
            if delta != 0:
                post_movement(
                    material_id=delivery.purchase_order.material_id,
                    quantity=delta,
                    movement_type=Movement.Type.ADJUSTMENT,
                    reference_id=delivery.id,
                    date=timezone.localdate(),
                    notes=f"Weight correction, plate {delivery.plate}: {old_measured} -> {delivery.weight_measured}",
                )
    except DatabaseError as exc:
        logger.exception("delivery_update_failed", extra={"delivery_id": delivery_id})
        raise PersistenceError() from exc

    logger.info("delivery_updated", extra={"delivery_id": delivery.id, "quantity": delta})
    return delivery


def delete_delivery(delivery_id):
    """Soft-delete a delivery and reverse its stock effect with a compensating adjustment."""
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    try:
        with transaction.atomic():
            delivery = Delivery.objects.select_for_update().live().filter(pk=delivery_id).first()
            if delivery is None:
                raise NotFoundError(f"Delivery {delivery_id} was not found.")
            post_movement(
                material_id=delivery.purchase_order.material_id,
                quantity=-delivery.weight_measured,
                movement_type=Movement.Type.ADJUSTMENT,
                reference_id=delivery.id,
                date=timezone.localdate(),
                notes=f"Delivery reversal, plate {delivery.plate}",
            )
            delivery.deleted_at = timezone.now()
            delivery.save(update_fields=["deleted_at", "updated_at"])
    except DatabaseError as exc:
        logger.exception("delivery_delete_failed", extra={"delivery_id": delivery_id})
        raise PersistenceError() from exc

    logger.info("delivery_deleted", extra={"delivery_id": delivery.id, "quantity": -delivery.weight_measured})
    return delivery


def delivery_snapshot(delivery):
    return {
        "id": delivery.id,
        "purchase_order_id": delivery.purchase_order_id,
        "plate": delivery.plate,
        "weight_measured": delivery.weight_measured,
        "weight_fiscal": delivery.weight_fiscal,
        "driver_name": delivery.driver_name,
        "date": delivery.date,
        "deleted_at": delivery.deleted_at,
    }
