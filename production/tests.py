from datetime import date
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import LedgerValidationError, NotFoundError
from inventory.models import Material, Movement
from inventory.reconciliation import audit_stock_accounts
from inventory.services import net_posted_for, post_movement
from production.models import ProductionConsumption, ProductionRecord
from production.services import create_production, delete_production, update_production


class ProductionPostingTests(TestCase):
    def setUp(self):
        self.ore = Material.objects.create(name="Minério de Ferro")
        self.coal = Material.objects.create(name="Carvão Vegetal", unit="m3")
        self.pig_iron = Material.objects.create(name="Ferro-Gusa")
        for material in (self.ore, self.coal):
            post_movement(material_id=material.id, quantity="100", movement_type=Movement.Type.ADJUSTMENT, notes="Opening balance")

    def _stock(self, material):
        material.refresh_from_db()
        return material.current_stock

    def _create(self):
        return create_production(
            date=date(2024, 5, 3),
            tons_produced="25",
            output_material_id=self.pig_iron.id,
            consumptions={self.ore.id: "40", self.coal.id: "90"},
        )

    def test_create_posts_output_and_consumption_movements(self):
        record = self._create()

        self.assertEqual(self._stock(self.pig_iron), Decimal("25.000"))
        self.assertEqual(self._stock(self.ore), Decimal("60.000"))
        self.assertEqual(self._stock(self.coal), Decimal("10.000"))
        types = set(Movement.objects.filter(reference_id=record.id).values_list("movement_type", flat=True))
        self.assertEqual(types, {Movement.Type.PRODUCTION_IN, Movement.Type.PRODUCTION_OUT})
        self.assertEqual(ProductionConsumption.objects.filter(production=record).count(), 2)

    def test_insufficient_stock_rejects_the_whole_record(self):
        with self.assertRaises(LedgerValidationError):
            create_production(
                date=date(2024, 5, 3),
                tons_produced="25",
                output_material_id=self.pig_iron.id,
                consumptions={self.ore.id: "500"},
            )

        self.assertFalse(ProductionRecord.objects.exists())
        self.assertEqual(self._stock(self.ore), Decimal("100.000"))
        self.assertEqual(self._stock(self.pig_iron), Decimal("0.000"))

    def test_invalid_figures_are_rejected(self):
        with self.assertRaises(LedgerValidationError):
            create_production(date=date(2024, 5, 3), tons_produced="0", output_material_id=self.pig_iron.id)
        with self.assertRaises(LedgerValidationError):
            create_production(date=date(2024, 5, 3), tons_produced="5", consumptions={self.ore.id: "-1"})

    def test_update_posts_adjustment_deltas(self):
        record = self._create()

        update_production(record.id, tons_produced="30", consumptions={self.ore.id: "45"})

        self.assertEqual(self._stock(self.pig_iron), Decimal("30.000"))
        self.assertEqual(self._stock(self.ore), Decimal("55.000"))
        self.assertEqual(self._stock(self.coal), Decimal("100.000"))
        self.assertEqual(net_posted_for(record.id, self.coal.id), Decimal("0.000"))
        self.assertEqual(Movement.objects.filter(reference_id=record.id, movement_type=Movement.Type.PRODUCTION_IN).count(), 1)
        self.assertEqual(audit_stock_accounts(), [])

    def test_delete_reverses_every_material(self):
        record = self._create()

        delete_production(record.id)

        self.assertFalse(ProductionRecord.objects.filter(pk=record.pk).exists())
        self.assertEqual(self._stock(self.pig_iron), Decimal("0.000"))
        self.assertEqual(self._stock(self.ore), Decimal("100.000"))
        self.assertEqual(self._stock(self.coal), Decimal("100.000"))
        self.assertEqual(audit_stock_accounts(), [])

        with self.assertRaises(NotFoundError):
            delete_production(record.id)


class ProductionApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.operator = get_user_model().objects.create_user(username="operator", password="pass1234")
        self.ore = Material.objects.create(name="Minério de Ferro")
        self.pig_iron = Material.objects.create(name="Ferro-Gusa")
        post_movement(material_id=self.ore.id, quantity="100", movement_type=Movement.Type.ADJUSTMENT)

    def test_production_crud(self):
        self.client.force_authenticate(user=self.operator)

        created = self.client.post(
            "/api/v1/production/",
            {
                "date": "2024-05-03",
                "tons_produced": "20",
                "output_material": str(self.pig_iron.id),
                "consumptions": [{"material": str(self.ore.id), "quantity": "35"}],
            },
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        record_id = created.json()["id"]
        self.assertEqual(created.json()["consumptions"][0]["quantity"], "35.000")

        patched = self.client.patch(f"/api/v1/production/{record_id}/", {"tons_produced": "22"}, format="json")
        self.assertEqual(patched.status_code, 200)
        self.assertEqual(patched.json()["tons_produced"], "22.000")
        self.pig_iron.refresh_from_db()
        self.assertEqual(self.pig_iron.current_stock, Decimal("22.000"))

        listed = self.client.get("/api/v1/production/")
        self.assertEqual(listed.json()["count"], 1)

        deleted = self.client.delete(f"/api/v1/production/{record_id}/")
        self.assertEqual(deleted.status_code, 204)
        self.ore.refresh_from_db()
        self.assertEqual(self.ore.current_stock, Decimal("100.000"))

    def test_missing_tons_is_a_validation_error(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post("/api/v1/production/", {"output_material": str(self.pig_iron.id)}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
