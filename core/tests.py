from datetime import date
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db.models import F
from django.test import TestCase
from rest_framework.test import APIClient

from common.audit import create_audit_log
from core.models import AuditLog
from inventory.models import Material, Movement, PurchaseOrder
from inventory.reconciliation import audit_stock_accounts
from production.models import ProductionRecord


class AuditLogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.operator = user_model.objects.create_user(username="operator", password="pass1234")
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", is_staff=True)

    def test_operator_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.operator)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_mutation_writes_audit_log_with_request_id(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/v1/materials/",
            {"name": "Calcário", "unit": "t"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(response.status_code, 201)
        log = AuditLog.objects.get(action="material.create", request_id="req-123")
        self.assertEqual(log.actor, self.admin)
        self.assertEqual(log.after_snapshot["name"], "Calcário")

    def test_audit_logs_are_read_only_and_filterable(self):
        self.client.force_authenticate(user=self.admin)
        log = create_audit_log(actor=self.admin, action="delivery.create", entity="delivery")
        create_audit_log(actor=self.admin, action="material.create", entity="material")

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")
        filtered = self.client.get("/api/v1/admin/audit-logs/?entity=delivery")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)
        self.assertEqual([row["id"] for row in filtered.json()["results"]], [str(log.id)])
        self.assertEqual(filtered.json()["results"][0]["actor_username"], "admin")

    def test_audit_log_export_is_csv(self):
        self.client.force_authenticate(user=self.admin)
        create_audit_log(actor=self.admin, action="stock.repair", entity="material")

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        body = response.content.decode("utf-8")
        self.assertTrue(body.startswith("id,created_at,actor,action,entity,entity_id,request_id"))
        self.assertIn("stock.repair", body)


class HealthEndpointTests(TestCase):
    def test_health_and_readiness(self):
        client = APIClient()

        health = client.get("/healthz/")
        ready = client.get("/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["status"], "ok")
        self.assertEqual(ready.status_code, 200)
        self.assertEqual(ready.json()["status"], "ready")
        self.assertTrue(health["X-Request-ID"])


class StockCommandTests(TestCase):
    def setUp(self):
        self.pig_iron = Material.objects.create(name="Ferro-Gusa")
        self.record = ProductionRecord.objects.create(date=date(2024, 5, 3), tons_produced=Decimal("25"), output_material=self.pig_iron)

    def test_repair_stock_is_dry_run_by_default(self):
        out = StringIO()

        call_command("repair_stock", "--source", "production", stdout=out)

        self.assertIn("Dry run only", out.getvalue())
        self.assertFalse(Movement.objects.exists())

    def test_repair_stock_apply_posts_once(self):
        out = StringIO()

        call_command("repair_stock", "--source", "production", "--apply", stdout=out)
        call_command("repair_stock", "--source", "production", "--apply", stdout=out)

        self.assertIn("Posted 1 movement(s)", out.getvalue())
        self.assertIn("No missing movements found.", out.getvalue())
        self.assertEqual(Movement.objects.filter(reference_id=self.record.id).count(), 1)
        self.pig_iron.refresh_from_db()
        self.assertEqual(self.pig_iron.current_stock, Decimal("25.000"))

    def test_repair_stock_rejects_unknown_material(self):
        with self.assertRaises(CommandError):
            call_command("repair_stock", "--source", "production", "--material", "not-a-uuid", stdout=StringIO())

    def test_audit_stock_fails_on_drift_when_asked(self):
        out = StringIO()
        call_command("audit_stock", stdout=out)
        self.assertIn("No stock drift detected.", out.getvalue())

        Material.objects.filter(pk=self.pig_iron.pk).update(current_stock=F("current_stock") + Decimal("3"))

        call_command("audit_stock", stdout=out)
        self.assertIn("Ferro-Gusa", out.getvalue())
        with self.assertRaises(CommandError):
            call_command("audit_stock", "--fail-on-drift", stdout=StringIO())


class SeedDemoDataTests(TestCase):
    def test_seed_is_idempotent_and_leaves_ledger_consistent(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        self.assertEqual(Material.objects.count(), 4)
        self.assertEqual(PurchaseOrder.objects.count(), 3)
        self.assertEqual(ProductionRecord.objects.count(), 1)
        self.assertTrue(get_user_model().objects.filter(username="admin", is_superuser=True).exists())
        self.assertEqual(audit_stock_accounts(), [])
