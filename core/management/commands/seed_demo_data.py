from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand
from django.utils import timezone

from common.permissions import SUPERVISOR_GROUP
from inventory.deliveries import create_delivery
from inventory.models import Material, Movement, PurchaseOrder, Supplier
from inventory.services import post_movement
from production.models import ProductionRecord
from production.services import create_production

MATERIALS = [
    ("Minério de Ferro", "t", Decimal("200"), Decimal("50")),
    ("Carvão Vegetal", "m3", Decimal("300"), Decimal("80")),
    ("Calcário", "t", Decimal("40"), Decimal("10")),
    ("Ferro-Gusa", "t", Decimal("0"), None),
]

SUPPLIERS = [
    ("Mineração Serra Azul", "Minério de Ferro", Decimal("185.00")),
    ("Carvoaria Boa Vista", "Carvão Vegetal", Decimal("240.00")),
    ("Calcário Central", "Calcário", Decimal("95.00")),
]


class Command(BaseCommand):
    help = "Seed demo procurement/stock data for local development."

    def _user(self, username, password, **defaults):
        User = get_user_model()
        user, created = User.objects.get_or_create(username=username, defaults={"email": f"{username}@example.com", **defaults})
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    def handle(self, *args, **options):
        self._user("admin", "admin1234", is_staff=True, is_superuser=True)
        supervisor = self._user("supervisor", "supervisor1234")
        self._user("operator", "operator1234")
        group, _ = Group.objects.get_or_create(name=SUPERVISOR_GROUP)
        supervisor.groups.add(group)

        today = timezone.localdate()
        materials = {}
        for name, unit, opening, alert in MATERIALS:
            material, created = Material.objects.get_or_create(name=name, defaults={"unit": unit, "min_stock_alert": alert})
            if created and opening > 0:
                post_movement(
                    material_id=material.id,
                    quantity=opening,
                    movement_type=Movement.Type.ADJUSTMENT,
                    date=today - timedelta(days=30),
                    notes="Opening balance",
                )
            materials[name] = material

        for supplier_name, material_name, price in SUPPLIERS:
            material = materials[material_name]
            supplier, _ = Supplier.objects.get_or_create(
                name=supplier_name,
                defaults={"material": material, "default_price": price},
            )
            if supplier.purchase_orders.exists():
                continue

            order = PurchaseOrder.objects.create(
                date=today - timedelta(days=20),
                supplier=supplier,
                material=material,
                quantity=Decimal("1000"),
                status=PurchaseOrder.Status.CONFIRMED,
                notes="Demo contract",
            )
            create_delivery(order.id, "ABC1D23", Decimal("32.450"), weight_fiscal=Decimal("32.000"), driver_name="João", date=today - timedelta(days=10))
            create_delivery(order.id, "XYZ9K87", Decimal("30.120"), driver_name="Maria", date=today - timedelta(days=3))

        if not ProductionRecord.objects.exists():
            create_production(
                date=today - timedelta(days=1),
                tons_produced=Decimal("25"),
                output_material_id=materials["Ferro-Gusa"].id,
                consumptions={
                    materials["Minério de Ferro"].id: Decimal("40"),
                    materials["Carvão Vegetal"].id: Decimal("90"),
                    materials["Calcário"].id: Decimal("4"),
                },
                technical_notes="Demo campaign",
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, supervisor/supervisor1234, operator/operator1234")
