"""Read-side projections over purchase orders and their deliveries.

Nothing here reads the movement log or writes anything: order fulfillment and
supplier balances are derived from live delivery rows on every call. Only the
measured weight counts towards fulfillment; fiscal weights are carried along
for display.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.db.models import Prefetch

from common.utils import ZERO
from inventory.models import Delivery, PurchaseOrder

FULFILLMENT_EPSILON = Decimal("0.1")

STATUS_OPEN = "open"
STATUS_COMPLETED = "completed"


def fulfillment_epsilon():
    return Decimal(getattr(settings, "LEDGER_FULFILLMENT_EPSILON", FULFILLMENT_EPSILON))


@dataclass(frozen=True)
class Fulfillment:
    quantity: Decimal
    delivered: Decimal
    remaining: Decimal
    status: str
    deliveries_count: int = 0
    delivered_fiscal: Decimal = ZERO
    remaining_fiscal: Decimal = ZERO
    divergence: Decimal = ZERO
    last_delivery_date: object = None

    @property
    def is_open(self):
        return self.status == STATUS_OPEN


def compute_fulfillment(quantity, deliveries, epsilon=None):
    epsilon = fulfillment_epsilon() if epsilon is None else Decimal(epsilon)
    quantity = Decimal(quantity)

    delivered = ZERO
    delivered_fiscal = ZERO
    divergence = ZERO
    count = 0
    last_date = None
    for delivery in deliveries:
        count += 1
        delivered += Decimal(delivery.weight_measured)
        if delivery.weight_fiscal is not None:
            delivered_fiscal += Decimal(delivery.weight_fiscal)
            divergence += Decimal(delivery.weight_measured) - Decimal(delivery.weight_fiscal)
        if delivery.date is not None and (last_date is None or delivery.date > last_date):
            last_date = delivery.date

    remaining = max(quantity - delivered, ZERO)
    return Fulfillment(
        quantity=quantity,
        delivered=delivered,
        remaining=remaining,
        status=STATUS_OPEN if remaining > epsilon else STATUS_COMPLETED,
        deliveries_count=count,
        delivered_fiscal=delivered_fiscal,
        remaining_fiscal=max(quantity - delivered_fiscal, ZERO),
        divergence=divergence,
        last_delivery_date=last_date,
    )


def _orders_with_live_deliveries():
    return (
        PurchaseOrder.objects.exclude(status=PurchaseOrder.Status.CANCELLED)
        .select_related("supplier", "material")
        .prefetch_related(Prefetch("deliveries", queryset=Delivery.objects.live(), to_attr="live_deliveries"))
    )


def order_view(order, deliveries=None):
    if deliveries is None:
        deliveries = getattr(order, "live_deliveries", None)
        if deliveries is None:
            deliveries = list(order.deliveries.live())
    result = compute_fulfillment(order.quantity, deliveries)
    return {
        "id": order.id,
        "date": order.date,
        "supplier_id": order.supplier_id,
        "supplier_name": order.supplier.name,
        "material_id": order.material_id,
        "material_name": order.material.name,
        "unit": order.material.unit,
        "quantity": result.quantity,
        "order_status": order.status,
        "status": result.status,
        "delivered": result.delivered,
        "remaining": result.remaining,
        "delivered_fiscal": result.delivered_fiscal,
        "remaining_fiscal": result.remaining_fiscal,
        "divergence": result.divergence,
        "deliveries_count": result.deliveries_count,
        "last_delivery_date": result.last_delivery_date,
        "notes": order.notes,
    }


def list_purchase_orders(include_completed=True):
    views = [order_view(order) for order in _orders_with_live_deliveries()]
    if not include_completed:
        views = [view for view in views if view["status"] == STATUS_OPEN]
    views.sort(key=lambda view: view["date"], reverse=True)
    views.sort(key=lambda view: view["status"] != STATUS_OPEN)
    return views


def list_open_purchase_orders():
    return list_purchase_orders(include_completed=False)


def aggregate_supplier_balances(order_views):
    rows = {}
    materials = defaultdict(set)
    for view in order_views:
        row = rows.get(view["supplier_id"])
        if row is None:
            row = rows[view["supplier_id"]] = {
                "supplier_id": view["supplier_id"],
                "supplier_name": view["supplier_name"],
                "total_contracted": ZERO,
                "total_delivered": ZERO,
                "total_remaining": ZERO,
                "total_delivered_fiscal": ZERO,
                "total_remaining_fiscal": ZERO,
                "open_orders_count": 0,
                "order_ids": [],
            }
        row["total_contracted"] += view["quantity"]
        row["total_delivered"] += view["delivered"]
        row["total_remaining"] += view["remaining"]
        row["total_delivered_fiscal"] += view["delivered_fiscal"]
        row["total_remaining_fiscal"] += view["remaining_fiscal"]
        row["order_ids"].append(view["id"])
        if view["status"] == STATUS_OPEN:
            row["open_orders_count"] += 1
        materials[view["supplier_id"]].add(view["material_name"])

    result = []
    for supplier_id, row in rows.items():
        row["materials"] = sorted(materials[supplier_id])
        result.append(row)
    result.sort(key=lambda row: (-row["total_remaining"], row["supplier_name"]))
    return result


def recent_order_deliveries(order_ids, limit):
    deliveries = (
        Delivery.objects.live()
        .filter(purchase_order_id__in=order_ids)
        .select_related("purchase_order__material")
        .order_by("-date", "-created_at")[:limit]
    )
    return [
        {
            "id": delivery.id,
            "date": delivery.date,
            "plate": delivery.plate,
            "material_name": delivery.purchase_order.material.name,
            "weight_measured": delivery.weight_measured,
            "weight_fiscal": delivery.weight_fiscal,
            "divergence": delivery.divergence,
        }
        for delivery in deliveries
    ]


def get_supplier_balances(recent_limit=None):
    if recent_limit is None:
        recent_limit = getattr(settings, "SUPPLIER_BALANCE_RECENT_DELIVERIES", 5)
    rows = aggregate_supplier_balances(list_open_purchase_orders())
    for row in rows:
        row["recent_deliveries"] = recent_order_deliveries(row["order_ids"], recent_limit) if recent_limit > 0 else []
    return rows
