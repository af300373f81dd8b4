import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from common.exceptions import LedgerValidationError, NotFoundError, PersistenceError
from common.utils import ZERO
from inventory.models import Material, Movement
from inventory.services import coerce_date, net_posted_by_material, parse_quantity, parse_uuid, post_movement
from production.models import ProductionConsumption, ProductionRecord

logger = logging.getLogger("ledger.production")

_UNSET = object()


def _validate_consumptions(consumptions):
    cleaned = {}
    errors = []
    for material_id, quantity in (consumptions or {}).items():
        try:
            material_id = parse_uuid(material_id, "material_id")
            quantity = parse_quantity(quantity, "quantity")
        except LedgerValidationError as exc:
            errors.append({str(material_id): exc.detail})
            continue
        if quantity <= 0:
            errors.append({str(material_id): ["Consumed quantity must be greater than zero."]})
            continue
        cleaned[material_id] = quantity
    if errors:
        raise LedgerValidationError({"consumptions": errors})
    return cleaned


def _validate_tons(tons_produced):
    tons = parse_quantity(tons_produced, "tons_produced")
    if tons <= 0:
        raise LedgerValidationError({"tons_produced": ["Production must be greater than zero."]})
    return tons


def _lock_materials(material_ids):
    materials = {material.id: material for material in Material.objects.select_for_update().filter(pk__in=material_ids)}
    missing = [str(material_id) for material_id in material_ids if material_id not in materials]
    if missing:
        raise NotFoundError(f"Material(s) not found: {', '.join(missing)}.")
    return materials


def _ensure_available(materials, required):
    shortages = []
    for material_id, quantity in required.items():
        material = materials[material_id]
        if material.current_stock < quantity:
            shortages.append(f"{material.name}: available {material.current_stock}, required {quantity}")
    if shortages:
        raise LedgerValidationError({"consumptions": [f"Insufficient stock. {shortage}" for shortage in shortages]})


def _target_nets(output_material_id, tons, consumptions):
    targets = {}
    if output_material_id is not None:
        targets[output_material_id] = tons
    for material_id, quantity in consumptions.items():
        targets[material_id] = targets.get(material_id, ZERO) - quantity
    return targets


def get_production(production_id):
    record = ProductionRecord.objects.select_related("output_material").filter(pk=parse_uuid(production_id, "production_id")).first()
    if record is None:
        raise NotFoundError(f"Production record {production_id} was not found.")
    return record


def create_production(*, date=None, tons_produced, output_material_id=None, consumptions=None, technical_notes=""):
    tons = _validate_tons(tons_produced)
    consumptions = _validate_consumptions(consumptions)
    output_material_id = parse_uuid(output_material_id, "output_material_id") if output_material_id else None
    date = coerce_date(date)

    try:
        with transaction.atomic():
            locked_ids = list(consumptions) + ([output_material_id] if output_material_id else [])
            materials = _lock_materials(locked_ids)
            _ensure_available(materials, consumptions)

            record = ProductionRecord.objects.create(
                date=date,
                tons_produced=tons,
                output_material_id=output_material_id,
                technical_notes=technical_notes or "",
            )
            ProductionConsumption.objects.bulk_create(
                [ProductionConsumption(production=record, material_id=material_id, quantity=quantity) for material_id, quantity in consumptions.items()]
            )
            if output_material_id:
                post_movement(
                    material_id=output_material_id,
                    quantity=tons,
                    movement_type=Movement.Type.PRODUCTION_IN,
                    reference_id=record.id,
                    date=date,
                    notes=f"Production output {date}",
                )
            for material_id, quantity in consumptions.items():
                post_movement(
                    material_id=material_id,
                    quantity=-quantity,
                    movement_type=Movement.Type.PRODUCTION_OUT,
                    reference_id=record.id,
                    date=date,
                    notes=f"Production consumption {date}",
                )
    except DatabaseError as exc:
        logger.exception("production_create_failed")
        raise PersistenceError() from exc

    logger.info("production_created", extra={"reference_id": record.id, "material_id": output_material_id, "quantity": tons})
    return record


def update_production(production_id, *, date=None, tons_produced=None, output_material_id=_UNSET, consumptions=None, technical_notes=None):
    """Change a production record; stock follows through adjustment deltas, posted movements are never edited."""
    tons = _validate_tons(tons_produced) if tons_produced is not None else None
    new_consumptions = _validate_consumptions(consumptions) if consumptions is not None else None
    if output_material_id is not _UNSET:
        output_material_id = parse_uuid(output_material_id, "output_material_id") if output_material_id else None
    date = coerce_date(date) if date is not None else None
    production_id = parse_uuid(production_id, "production_id")

    try:
        with transaction.atomic():
            record = ProductionRecord.objects.select_for_update().filter(pk=production_id).first()
            if record is None:
                raise NotFoundError(f"Production record {production_id} was not found.")

            if tons is not None:
                record.tons_produced = tons
            if output_material_id is not _UNSET:
                record.output_material_id = output_material_id
            if date is not None:
                record.date = date
            if technical_notes is not None:
                record.technical_notes = technical_notes
            if new_consumptions is None:
                new_consumptions = {item.material_id: item.quantity for item in record.consumptions.all()}

            targets = _target_nets(record.output_material_id, record.tons_produced, new_consumptions)
            posted = net_posted_by_material(record.id)
            deltas = {}
            for material_id in set(targets) | set(posted):
                delta = targets.get(material_id, ZERO) - posted.get(material_id, ZERO)
                if delta != 0:
                    deltas[material_id] = delta

            materials = _lock_materials(list(deltas))
            extra_consumption = {
                material_id: -delta for material_id, delta in deltas.items() if delta < 0 and material_id in new_consumptions
            }
            _ensure_available(materials, extra_consumption)

            record.save()
            record.consumptions.all().delete()
            ProductionConsumption.objects.bulk_create(
                [ProductionConsumption(production=record, material_id=material_id, quantity=quantity) for material_id, quantity in new_consumptions.items()]
            )
            for material_id, delta in deltas.items():
                post_movement(
                    material_id=material_id,
                    quantity=delta,
                    movement_type=Movement.Type.ADJUSTMENT,
                    reference_id=record.id,
                    date=timezone.localdate(),
                    notes=f"Production correction {record.date}",
                )
    except DatabaseError as exc:
        logger.exception("production_update_failed", extra={"reference_id": production_id})
        raise PersistenceError() from exc

    logger.info("production_updated", extra={"reference_id": record.id})
    return record


def delete_production(production_id):
    production_id = parse_uuid(production_id, "production_id")
    try:
        with transaction.atomic():
            record = ProductionRecord.objects.select_for_update().filter(pk=production_id).first()
            if record is None:
                raise NotFoundError(f"Production record {production_id} was not found.")
            for material_id, net in net_posted_by_material(record.id).items():
                if net == 0:
                    continue
                post_movement(
                    material_id=material_id,
                    quantity=-net,
                    movement_type=Movement.Type.ADJUSTMENT,
                    reference_id=record.id,
                    date=timezone.localdate(),
                    notes=f"Production reversal {record.date}",
                )
            record.delete()
    except DatabaseError as exc:
        logger.exception("production_delete_failed", extra={"reference_id": production_id})
        raise PersistenceError() from exc

    logger.info("production_deleted", extra={"reference_id": production_id})
    return production_id


def production_snapshot(record):
    return {
        "id": record.id,
        "date": record.date,
        "tons_produced": record.tons_produced,
        "output_material_id": record.output_material_id,
        "technical_notes": record.technical_notes,
        "consumptions": {str(item.material_id): item.quantity for item in record.consumptions.all()},
    }
