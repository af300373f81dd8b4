import threading
import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest import mock, skipUnless

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.db import DatabaseError, OperationalError, connection
from django.db.models import F
from django.test import TestCase, TransactionTestCase
from django.test.utils import CaptureQueriesContext
from rest_framework.test import APIClient

from common.exceptions import ConsistencyError, LedgerValidationError, NotFoundError, PersistenceError
from common.permissions import SUPERVISOR_GROUP
from core.models import AuditLog
from inventory.deliveries import create_delivery, delete_delivery, list_deliveries, update_delivery
from inventory.fulfillment import (
    STATUS_COMPLETED,
    STATUS_OPEN,
    aggregate_supplier_balances,
    compute_fulfillment,
    get_supplier_balances,
    list_open_purchase_orders,
    list_purchase_orders,
    order_view,
)
from inventory.models import Delivery, LedgerAppendOnlyError, Material, Movement, PurchaseOrder, Supplier
from inventory.reconciliation import audit_stock_accounts, run_stock_repair, verify_stock_account
from inventory.serializers import MaterialSerializer
from inventory.services import (
    append_movement,
    apply_movement,
    movement_exists_for,
    net_posted_for,
    post_movement,
    stock_balance_from_log,
)
from production.models import ProductionRecord


class LedgerFixtureMixin:
    def make_material(self, name="Minério de Ferro", unit="t"):
        return Material.objects.create(name=name, unit=unit)

    def make_supplier(self, name="Mineração Serra Azul", material=None):
        return Supplier.objects.create(name=name, material=material)

    def make_order(self, supplier, material, quantity="1000", order_date=None, status=PurchaseOrder.Status.CONFIRMED):
        return PurchaseOrder.objects.create(
            date=order_date or date(2024, 5, 1),
            supplier=supplier,
            material=material,
            quantity=Decimal(quantity),
            status=status,
        )

    def stock_of(self, material):
        material.refresh_from_db()
        return material.current_stock

    def assert_stock_matches_log(self, material):
        self.assertEqual(self.stock_of(material), stock_balance_from_log(material.id))


class StockAccountAndMovementLogTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.material = self.make_material()

    def test_apply_movement_increments_without_reading_stale_value(self):
        stale = Material.objects.get(pk=self.material.pk)

        apply_movement(self.material.id, Decimal("100"))
        apply_movement(stale.id, Decimal("100"))

        self.assertEqual(self.stock_of(self.material), Decimal("200.000"))

    def test_apply_movement_is_a_single_relative_update(self):
        with CaptureQueriesContext(connection) as ctx:
            apply_movement(self.material.id, Decimal("100"))

        self.assertEqual(len(ctx.captured_queries), 1)
        sql = ctx.captured_queries[0]["sql"]
        self.assertTrue(sql.startswith("UPDATE"))
        self.assertIn('"current_stock" +', sql)

    def test_interleaved_postings_from_stale_reads_both_count(self):
        supplier = self.make_supplier(material=self.material)
        order = self.make_order(supplier, self.material)
        first_reader = Material.objects.get(pk=self.material.pk)
        second_reader = Material.objects.get(pk=self.material.pk)

        create_delivery(order.id, "AAA0A00", Decimal("100"))
        create_delivery(order.id, "BBB0B00", Decimal("100"))
        first_reader.save()
        second_reader.save()

        self.assertEqual(self.stock_of(self.material), Decimal("200.000"))
        self.assert_stock_matches_log(self.material)

    def test_material_edit_from_stale_copy_keeps_posted_stock(self):
        supplier = self.make_supplier(material=self.material)
        order = self.make_order(supplier, self.material)
        stale = Material.objects.get(pk=self.material.pk)

        create_delivery(order.id, "AAA0A00", Decimal("400"))
        serializer = MaterialSerializer(stale, data={"min_stock_alert": "10"}, partial=True)
        serializer.is_valid(raise_exception=True)
        edited = serializer.save()

        self.assertEqual(edited.current_stock, Decimal("400.000"))
        self.assertEqual(self.stock_of(self.material), Decimal("400.000"))
        self.assertEqual(self.material.min_stock_alert, Decimal("10.000"))
        self.assert_stock_matches_log(self.material)

    def test_apply_movement_unknown_material_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            apply_movement(uuid.uuid4(), Decimal("1"))

    def test_post_movement_is_idempotent_per_origin(self):
        reference_id = uuid.uuid4()

        first, created_first = post_movement(
            material_id=self.material.id,
            quantity="25",
            movement_type=Movement.Type.PRODUCTION_IN,
            reference_id=reference_id,
        )
        second, created_second = post_movement(
            material_id=self.material.id,
            quantity="25",
            movement_type=Movement.Type.PRODUCTION_IN,
            reference_id=reference_id,
        )

        self.assertTrue(created_first)
        self.assertFalse(created_second)
        self.assertEqual(first.id, second.id)
        self.assertEqual(Movement.objects.filter(reference_id=reference_id).count(), 1)
        self.assertEqual(self.stock_of(self.material), Decimal("25.000"))

    def test_adjustments_may_repeat_for_the_same_reference(self):
        reference_id = uuid.uuid4()

        post_movement(material_id=self.material.id, quantity="10", movement_type=Movement.Type.ADJUSTMENT, reference_id=reference_id)
        post_movement(material_id=self.material.id, quantity="-4", movement_type=Movement.Type.ADJUSTMENT, reference_id=reference_id)

        self.assertEqual(Movement.objects.filter(reference_id=reference_id).count(), 2)
        self.assertEqual(net_posted_for(reference_id, self.material.id), Decimal("6.000"))
        self.assert_stock_matches_log(self.material)

    def test_post_movement_rejects_wrong_sign_and_zero(self):
        with self.assertRaises(LedgerValidationError):
            post_movement(material_id=self.material.id, quantity="5", movement_type=Movement.Type.SALE)
        with self.assertRaises(LedgerValidationError):
            post_movement(material_id=self.material.id, quantity="-5", movement_type=Movement.Type.PURCHASE)
        with self.assertRaises(LedgerValidationError):
            post_movement(material_id=self.material.id, quantity="0", movement_type=Movement.Type.ADJUSTMENT)

        self.assertFalse(Movement.objects.exists())
        self.assertEqual(self.stock_of(self.material), Decimal("0.000"))

    def test_sales_are_accepted_from_external_writers(self):
        post_movement(material_id=self.material.id, quantity="50", movement_type=Movement.Type.ADJUSTMENT)
        sale_id = uuid.uuid4()

        movement, created = post_movement(material_id=self.material.id, quantity="-30", movement_type=Movement.Type.SALE, reference_id=sale_id)

        self.assertTrue(created)
        self.assertTrue(movement_exists_for(sale_id, self.material.id))
        self.assertEqual(self.stock_of(self.material), Decimal("20.000"))

    def test_movement_rows_are_append_only(self):
        movement, _ = post_movement(material_id=self.material.id, quantity="3", movement_type=Movement.Type.ADJUSTMENT)

        movement.notes = "edited"
        with self.assertRaises(LedgerAppendOnlyError):
            movement.save()
        with self.assertRaises(LedgerAppendOnlyError):
            movement.delete()
        self.assertEqual(Movement.objects.get(pk=movement.pk).notes, "")


class DeliveryRegistryTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.material = self.make_material()
        self.supplier = self.make_supplier(material=self.material)
        self.order = self.make_order(self.supplier, self.material)

    def _view(self):
        return order_view(PurchaseOrder.objects.select_related("supplier", "material").get(pk=self.order.pk))

    def test_create_delivery_posts_purchase_movement_and_leaves_order_open(self):
        delivery = create_delivery(self.order.id, "abc1d23", Decimal("400"), driver_name="João", date=date(2024, 5, 2))

        view = self._view()
        self.assertEqual(view["remaining"], Decimal("600.000"))
        self.assertEqual(view["status"], STATUS_OPEN)
        self.assertIn(self.order.id, [row["id"] for row in list_open_purchase_orders()])
        self.assertEqual(delivery.plate, "ABC1D23")

        movement = Movement.objects.get(reference_id=delivery.id)
        self.assertEqual(movement.movement_type, Movement.Type.PURCHASE)
        self.assertEqual(movement.quantity, Decimal("400.000"))
        self.assertEqual(self.stock_of(self.material), Decimal("400.000"))

    def test_fiscal_weight_update_changes_neither_remaining_nor_stock(self):
        delivery = create_delivery(self.order.id, "ABC1D23", Decimal("400"))

        update_delivery(delivery.id, weight_fiscal=Decimal("400"))

        view = self._view()
        self.assertEqual(view["remaining"], Decimal("600.000"))
        self.assertEqual(view["status"], STATUS_OPEN)
        self.assertEqual(view["delivered_fiscal"], Decimal("400.000"))
        self.assertEqual(Movement.objects.filter(reference_id=delivery.id).count(), 1)
        self.assertEqual(self.stock_of(self.material), Decimal("400.000"))

    def test_delete_delivery_reverses_stock_and_restores_remaining(self):
        delivery = create_delivery(self.order.id, "ABC1D23", Decimal("400"))
        stock_before = self.stock_of(self.material)

        delete_delivery(delivery.id)

        self.assertEqual(self._view()["remaining"], Decimal("1000.000"))
        self.assertEqual(stock_before - self.stock_of(self.material), Decimal("400.000"))
        self.assertIsNotNone(Delivery.objects.get(pk=delivery.pk).deleted_at)
        self.assertEqual(list_deliveries(self.order.id), [])
        reversal = Movement.objects.get(reference_id=delivery.id, movement_type=Movement.Type.ADJUSTMENT)
        self.assertEqual(reversal.quantity, Decimal("-400.000"))
        self.assertEqual(net_posted_for(delivery.id, self.material.id), Decimal("0.000"))

    def test_measured_weight_correction_posts_delta_adjustment(self):
        delivery = create_delivery(self.order.id, "ABC1D23", Decimal("400"))

        update_delivery(delivery.id, weight_measured=Decimal("380"), driver_name="Maria")

        adjustment = Movement.objects.get(reference_id=delivery.id, movement_type=Movement.Type.ADJUSTMENT)
        self.assertEqual(adjustment.quantity, Decimal("-20.000"))
        self.assertEqual(net_posted_for(delivery.id, self.material.id), Decimal("380.000"))
        self.assertEqual(self.stock_of(self.material), Decimal("380.000"))
        self.assertEqual(self._view()["remaining"], Decimal("620.000"))

    def test_stock_is_not_clamped_at_zero_on_delete(self):
        delivery = create_delivery(self.order.id, "ABC1D23", Decimal("400"))
        post_movement(material_id=self.material.id, quantity="-350", movement_type=Movement.Type.PRODUCTION_OUT, reference_id=uuid.uuid4())

        delete_delivery(delivery.id)

        self.assertEqual(self.stock_of(self.material), Decimal("-350.000"))
        self.assert_stock_matches_log(self.material)

    def test_create_delivery_validates_required_fields(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            create_delivery(None, "", None)
        self.assertEqual(set(ctx.exception.detail.keys()), {"order_id", "plate", "weight_measured"})

        with self.assertRaises(LedgerValidationError) as ctx:
            create_delivery(self.order.id, "ABC1D23", Decimal("0"), weight_fiscal=Decimal("-1"))
        self.assertEqual(set(ctx.exception.detail.keys()), {"weight_measured", "weight_fiscal"})

        self.assertFalse(Delivery.objects.exists())

    def test_unknown_order_and_delivery_raise_not_found(self):
        with self.assertRaises(NotFoundError):
            create_delivery(uuid.uuid4(), "ABC1D23", Decimal("10"))
        with self.assertRaises(NotFoundError):
            update_delivery(uuid.uuid4(), weight_fiscal=Decimal("1"))

        delivery = create_delivery(self.order.id, "ABC1D23", Decimal("10"))
        delete_delivery(delivery.id)
        with self.assertRaises(NotFoundError):
            delete_delivery(delivery.id)
        self.assertEqual(self.stock_of(self.material), Decimal("0.000"))

    def test_cancelled_order_rejects_deliveries(self):
        self.order.status = PurchaseOrder.Status.CANCELLED
        self.order.save(update_fields=["status"])

        with self.assertRaises(LedgerValidationError):
            create_delivery(self.order.id, "ABC1D23", Decimal("10"))

    def test_failed_movement_write_rolls_back_the_delivery(self):
        with mock.patch("inventory.services.append_movement", side_effect=DatabaseError("disk full")):
            with self.assertRaises(PersistenceError):
                create_delivery(self.order.id, "ABC1D23", Decimal("400"))

        self.assertFalse(Delivery.objects.exists())
        self.assertFalse(Movement.objects.exists())
        self.assertEqual(self.stock_of(self.material), Decimal("0.000"))

    def test_failed_reversal_keeps_delivery_live(self):
        delivery = create_delivery(self.order.id, "ABC1D23", Decimal("400"))

        with mock.patch("inventory.deliveries.post_movement", side_effect=PersistenceError()):
            with self.assertRaises(PersistenceError):
                delete_delivery(delivery.id)

        self.assertIsNone(Delivery.objects.get(pk=delivery.pk).deleted_at)
        self.assertEqual(self.stock_of(self.material), Decimal("400.000"))

    def test_two_deliveries_on_same_material_both_count(self):
        stale = Material.objects.get(pk=self.material.pk)
        other_order = self.make_order(self.supplier, self.material, quantity="500")

        create_delivery(self.order.id, "AAA0A00", Decimal("100"))
        create_delivery(other_order.id, "BBB0B00", Decimal("100"))
        stale.name = "Minério Fino"
        stale.save(update_fields=["name"])

        self.assertEqual(self.stock_of(self.material), Decimal("200.000"))
        self.assert_stock_matches_log(self.material)

    def test_stock_equals_log_after_mixed_sequence(self):
        first = create_delivery(self.order.id, "AAA0A00", Decimal("120.5"))
        second = create_delivery(self.order.id, "BBB0B00", Decimal("80"), weight_fiscal=Decimal("79.5"))
        update_delivery(first.id, weight_measured=Decimal("121.25"))
        update_delivery(second.id, weight_fiscal=None, plate="CCC0C00")
        post_movement(material_id=self.material.id, quantity="-40", movement_type=Movement.Type.PRODUCTION_OUT, reference_id=uuid.uuid4())
        delete_delivery(second.id)

        self.assert_stock_matches_log(self.material)
        self.assertEqual(self.stock_of(self.material), Decimal("81.250"))
        self.assertEqual(audit_stock_accounts(), [])


@skipUnless(connection.vendor == "postgresql", "Row-level concurrency needs PostgreSQL.")
class ConcurrentDeliveryTests(LedgerFixtureMixin, TransactionTestCase):
    def test_concurrent_deliveries_do_not_lose_increments(self):
        material = self.make_material()
        supplier = self.make_supplier(material=material)
        order = self.make_order(supplier, material)
        barrier = threading.Barrier(2)
        errors = []

        def post(plate):
            try:
                barrier.wait()
                create_delivery(order.id, plate, Decimal("100"))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=post, args=(plate,)) for plate in ("AAA0A00", "BBB0B00")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.stock_of(material), Decimal("200.000"))


class FulfillmentCalculatorTests(LedgerFixtureMixin, TestCase):
    def _deliveries(self, *weights, fiscal=None):
        return [Delivery(weight_measured=Decimal(w), weight_fiscal=fiscal, date=date(2024, 5, 2)) for w in weights]

    def test_remaining_at_epsilon_boundary(self):
        at_epsilon = compute_fulfillment(Decimal("10"), self._deliveries("9.9"))
        below_epsilon = compute_fulfillment(Decimal("10"), self._deliveries("9.91"))
        above_epsilon = compute_fulfillment(Decimal("10"), self._deliveries("9.899"))

        self.assertEqual(at_epsilon.remaining, Decimal("0.1"))
        self.assertEqual(at_epsilon.status, STATUS_COMPLETED)
        self.assertEqual(below_epsilon.remaining, Decimal("0.09"))
        self.assertEqual(below_epsilon.status, STATUS_COMPLETED)
        self.assertEqual(above_epsilon.status, STATUS_OPEN)

    def test_remaining_ignores_fiscal_weight(self):
        baseline = compute_fulfillment(Decimal("1000"), self._deliveries("400", "150"))
        for fiscal in (None, Decimal("0"), Decimal("400"), Decimal("9999")):
            result = compute_fulfillment(Decimal("1000"), self._deliveries("400", "150", fiscal=fiscal))
            self.assertEqual(result.remaining, baseline.remaining)
            self.assertEqual(result.status, baseline.status)
        self.assertEqual(baseline.remaining, Decimal("450"))

    def test_over_delivery_clamps_remaining_at_zero(self):
        result = compute_fulfillment(Decimal("100"), self._deliveries("60", "55"))

        self.assertEqual(result.delivered, Decimal("115"))
        self.assertEqual(result.remaining, Decimal("0"))
        self.assertFalse(result.is_open)

    def test_listing_puts_open_orders_first_and_skips_cancelled(self):
        material = self.make_material()
        supplier = self.make_supplier(material=material)
        old_open = self.make_order(supplier, material, order_date=date(2024, 1, 10))
        new_open = self.make_order(supplier, material, order_date=date(2024, 3, 10))
        completed = self.make_order(supplier, material, quantity="50", order_date=date(2024, 4, 10))
        cancelled = self.make_order(supplier, material, order_date=date(2024, 4, 11), status=PurchaseOrder.Status.CANCELLED)
        create_delivery(completed.id, "AAA0A00", Decimal("50"))

        ids = [row["id"] for row in list_purchase_orders()]
        open_ids = [row["id"] for row in list_open_purchase_orders()]

        self.assertEqual(ids, [new_open.id, old_open.id, completed.id])
        self.assertEqual(open_ids, [new_open.id, old_open.id])
        self.assertNotIn(cancelled.id, ids)


class SupplierBalanceTests(LedgerFixtureMixin, TestCase):
    def _view(self, supplier_id, supplier_name, quantity, delivered, material_name="Ore", fiscal="0"):
        remaining = max(Decimal(quantity) - Decimal(delivered), Decimal("0"))
        return {
            "id": uuid.uuid4(),
            "supplier_id": supplier_id,
            "supplier_name": supplier_name,
            "material_name": material_name,
            "quantity": Decimal(quantity),
            "delivered": Decimal(delivered),
            "remaining": remaining,
            "delivered_fiscal": Decimal(fiscal),
            "remaining_fiscal": max(Decimal(quantity) - Decimal(fiscal), Decimal("0")),
            "status": STATUS_OPEN if remaining > Decimal("0.1") else STATUS_COMPLETED,
        }

    def test_aggregate_sorts_by_remaining_then_name(self):
        rows = aggregate_supplier_balances(
            [
                self._view(1, "Beta", "100", "50"),
                self._view(2, "Alpha", "300", "250"),
                self._view(3, "Gamma", "500", "100", material_name="Coal"),
                self._view(3, "Gamma", "200", "0", material_name="Ore"),
            ]
        )

        self.assertEqual([row["supplier_name"] for row in rows], ["Gamma", "Alpha", "Beta"])
        gamma = rows[0]
        self.assertEqual(gamma["total_contracted"], Decimal("700"))
        self.assertEqual(gamma["total_delivered"], Decimal("100"))
        self.assertEqual(gamma["total_remaining"], Decimal("600"))
        self.assertEqual(gamma["open_orders_count"], 2)
        self.assertEqual(gamma["materials"], ["Coal", "Ore"])
        self.assertEqual(gamma["total_remaining_fiscal"], Decimal("700"))

    def test_supplier_balances_include_recent_deliveries_of_open_orders(self):
        ore = self.make_material("Minério de Ferro")
        coal = self.make_material("Carvão Vegetal", unit="m3")
        mine = self.make_supplier("Mineração Serra Azul", material=ore)
        kiln = self.make_supplier("Carvoaria Boa Vista", material=coal)
        mine_order = self.make_order(mine, ore, quantity="1000")
        kiln_order = self.make_order(kiln, coal, quantity="300")
        done_order = self.make_order(kiln, coal, quantity="20")
        for day in range(1, 4):
            create_delivery(mine_order.id, f"AAA0A0{day}", Decimal("100"), weight_fiscal=Decimal("98"), date=date(2024, 5, day))
        create_delivery(kiln_order.id, "BBB0B00", Decimal("50"))
        create_delivery(done_order.id, "CCC0C00", Decimal("20"), date=date(2024, 6, 1))
        cancelled_order = self.make_order(kiln, coal, quantity="500")
        create_delivery(cancelled_order.id, "DDD0D00", Decimal("30"), date=date(2024, 6, 2))
        PurchaseOrder.objects.filter(pk=cancelled_order.pk).update(status=PurchaseOrder.Status.CANCELLED)

        rows = get_supplier_balances(recent_limit=2)

        self.assertEqual([row["supplier_name"] for row in rows], ["Mineração Serra Azul", "Carvoaria Boa Vista"])
        mine_row = rows[0]
        self.assertEqual(mine_row["total_remaining"], Decimal("700.000"))
        self.assertEqual(mine_row["total_delivered_fiscal"], Decimal("294.000"))
        self.assertEqual(mine_row["total_remaining_fiscal"], Decimal("706.000"))
        self.assertEqual(len(mine_row["recent_deliveries"]), 2)
        self.assertEqual(mine_row["recent_deliveries"][0]["date"], date(2024, 5, 3))
        self.assertEqual(mine_row["recent_deliveries"][0]["divergence"], Decimal("2.000"))
        self.assertEqual(rows[1]["open_orders_count"], 1)
        self.assertEqual(rows[1]["total_contracted"], Decimal("300.000"))
        self.assertEqual([row["plate"] for row in rows[1]["recent_deliveries"]], ["BBB0B00"])


class StockRepairTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.pig_iron = self.make_material("Ferro-Gusa")

    def test_repair_backfills_missing_production_movement_once(self):
        record = ProductionRecord.objects.create(date=date(2024, 5, 3), tons_produced=Decimal("25"), output_material=self.pig_iron)

        first = run_stock_repair("production")
        second = run_stock_repair("production")

        self.assertEqual(first.fixed_count, 1)
        self.assertEqual(first.total_adjusted, Decimal("25.000"))
        self.assertEqual(len(first.log), 1)
        self.assertEqual(Movement.objects.filter(reference_id=record.id).count(), 1)
        self.assertEqual(second.fixed_count, 0)
        self.assertEqual(second.total_adjusted, Decimal("0"))
        self.assertEqual(self.stock_of(self.pig_iron), Decimal("25.000"))
        self.assert_stock_matches_log(self.pig_iron)

    def test_dry_run_reports_without_writing(self):
        ProductionRecord.objects.create(date=date(2024, 5, 3), tons_produced=Decimal("25"), output_material=self.pig_iron)

        result = run_stock_repair("production", dry_run=True)

        self.assertEqual(result.fixed_count, 1)
        self.assertTrue(result.dry_run)
        self.assertFalse(Movement.objects.exists())
        self.assertEqual(self.stock_of(self.pig_iron), Decimal("0.000"))

    def test_legacy_record_without_output_uses_requested_material(self):
        record = ProductionRecord.objects.create(date=date(2024, 5, 3), tons_produced=Decimal("12"))

        skipped = run_stock_repair("production")
        fixed = run_stock_repair("production", material_id=self.pig_iron.id)

        self.assertEqual(skipped.fixed_count, 0)
        self.assertEqual(fixed.fixed_count, 1)
        self.assertTrue(movement_exists_for(record.id, self.pig_iron.id, Movement.Type.PRODUCTION_IN))
        record.refresh_from_db()
        self.assertEqual(record.output_material_id, self.pig_iron.id)
        self.assertEqual(run_stock_repair("production", material_id=self.pig_iron.id).fixed_count, 0)

    def test_repair_backfills_delivery_without_purchase_movement(self):
        ore = self.make_material("Minério de Ferro")
        order = self.make_order(self.make_supplier(material=ore), ore)
        orphan = Delivery.objects.create(purchase_order=order, plate="AAA0A00", weight_measured=Decimal("40"), date=date(2024, 5, 2))
        create_delivery(order.id, "BBB0B00", Decimal("10"))

        result = run_stock_repair("delivery", material_id=ore.id)

        self.assertEqual(result.fixed_count, 1)
        self.assertTrue(movement_exists_for(orphan.id, ore.id, Movement.Type.PURCHASE))
        self.assertEqual(self.stock_of(ore), Decimal("50.000"))
        self.assertEqual(audit_stock_accounts(), [])

    def test_repair_retries_transient_operational_errors(self):
        ProductionRecord.objects.create(date=date(2024, 5, 3), tons_produced=Decimal("25"), output_material=self.pig_iron)
        calls = []

        def flaky_append(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return append_movement(*args, **kwargs)

        with mock.patch("inventory.reconciliation.append_movement", side_effect=flaky_append):
            result = run_stock_repair("production")

        self.assertEqual(len(calls), 2)
        self.assertEqual(result.fixed_count, 1)
        self.assertEqual(self.stock_of(self.pig_iron), Decimal("25.000"))

    def test_unknown_source_type_is_rejected(self):
        with self.assertRaises(LedgerValidationError):
            run_stock_repair("sales")
        with self.assertRaises(NotFoundError):
            run_stock_repair("production", material_id=uuid.uuid4())


class StockAuditTests(LedgerFixtureMixin, TestCase):
    def test_drift_is_reported_and_not_corrected(self):
        material = self.make_material()
        post_movement(material_id=material.id, quantity="10", movement_type=Movement.Type.ADJUSTMENT)
        Material.objects.filter(pk=material.pk).update(current_stock=F("current_stock") + Decimal("5"))

        mismatches = audit_stock_accounts()

        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0]["drift"], Decimal("5.000"))
        with self.assertRaises(ConsistencyError) as ctx:
            verify_stock_account(material.id)
        self.assertEqual(ctx.exception.material_id, material.id)
        self.assertEqual(ctx.exception.log_balance, Decimal("10.000"))
        self.assertEqual(self.stock_of(material), Decimal("15.000"))


class LedgerApiTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.operator = user_model.objects.create_user(username="operator", password="pass1234")
        self.supervisor = user_model.objects.create_user(username="supervisor", password="pass1234")
        self.supervisor.groups.add(Group.objects.create(name=SUPERVISOR_GROUP))
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", is_staff=True)

        self.material = self.make_material()
        self.supplier = self.make_supplier(material=self.material)
        self.order = self.make_order(self.supplier, self.material)

    def _open_order_row(self):
        response = self.client.get("/api/v1/purchase-orders/open/")
        self.assertEqual(response.status_code, 200)
        rows = [row for row in response.json()["results"] if row["id"] == str(self.order.id)]
        return rows[0] if rows else None

    def test_delivery_lifecycle_over_api(self):
        self.client.force_authenticate(user=self.operator)

        created = self.client.post(
            "/api/v1/deliveries/",
            {"order": str(self.order.id), "plate": "ABC1D23", "weight_measured": "400", "driver_name": "João", "date": "2024-05-02"},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        delivery_id = created.json()["id"]
        self.assertEqual(created.json()["weight_measured"], "400.000")
        self.assertIsNone(created.json()["weight_fiscal"])
        self.assertEqual(self._open_order_row()["remaining"], "600.000")

        patched = self.client.patch(f"/api/v1/deliveries/{delivery_id}/", {"weight_fiscal": "400"}, format="json")
        self.assertEqual(patched.status_code, 200)
        self.assertEqual(patched.json()["divergence"], "0.000")
        self.assertEqual(self._open_order_row()["remaining"], "600.000")

        listed = self.client.get(f"/api/v1/purchase-orders/{self.order.id}/deliveries/")
        self.assertEqual([row["id"] for row in listed.json()], [delivery_id])

        deleted = self.client.delete(f"/api/v1/deliveries/{delivery_id}/")
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(self._open_order_row()["remaining"], "1000.000")
        self.assertEqual(self.stock_of(self.material), Decimal("0.000"))

        missing = self.client.get(f"/api/v1/deliveries/{delivery_id}/")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "not_found")

        actions = set(AuditLog.objects.filter(entity="delivery", entity_id=delivery_id).values_list("action", flat=True))
        self.assertEqual(actions, {"delivery.create", "delivery.update", "delivery.delete"})

    def test_delivery_listing_is_paginated(self):
        self.client.force_authenticate(user=self.operator)
        other_order = self.make_order(self.supplier, self.material, quantity="50")
        for day in range(1, 4):
            create_delivery(self.order.id, f"AAA0A0{day}", Decimal("10"), date=date(2024, 5, day))
        create_delivery(other_order.id, "BBB0B00", Decimal("5"), date=date(2024, 5, 9))

        everything = self.client.get("/api/v1/deliveries/?page_size=2")
        by_order = self.client.get(f"/api/v1/deliveries/?order={self.order.id}")

        self.assertEqual(everything.status_code, 200)
        self.assertEqual(everything.json()["count"], 4)
        self.assertEqual(len(everything.json()["results"]), 2)
        self.assertIsNotNone(everything.json()["next"])
        self.assertEqual(everything.json()["results"][0]["plate"], "BBB0B00")
        self.assertEqual(by_order.json()["count"], 3)
        self.assertEqual([row["plate"] for row in by_order.json()["results"]], ["AAA0A03", "AAA0A02", "AAA0A01"])

    def test_invalid_delivery_returns_validation_envelope(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post("/api/v1/deliveries/", {"order": str(self.order.id), "plate": "ABC1D23", "weight_measured": "0"}, format="json")

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("weight_measured", payload["errors"])
        self.assertFalse(Delivery.objects.exists())

    def test_external_movement_posting_requires_stock_adjust_and_is_idempotent(self):
        reference_id = str(uuid.uuid4())
        body = {"material": str(self.material.id), "quantity": "25", "movement_type": "producao_entrada", "reference_id": reference_id}

        self.client.force_authenticate(user=self.operator)
        denied = self.client.post("/api/v1/movements/", body, format="json")
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["code"], "permission_denied")

        self.client.force_authenticate(user=self.supervisor)
        first = self.client.post("/api/v1/movements/", body, format="json")
        retry = self.client.post("/api/v1/movements/", body, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(retry.status_code, 200)
        self.assertEqual(first.json()["id"], retry.json()["id"])
        self.assertEqual(self.stock_of(self.material), Decimal("25.000"))

        listed = self.client.get(f"/api/v1/movements/?material={self.material.id}")
        self.assertEqual(listed.json()["count"], 1)

    def test_stock_repair_endpoint_is_admin_only(self):
        pig_iron = self.make_material("Ferro-Gusa")
        ProductionRecord.objects.create(date=date(2024, 5, 3), tons_produced=Decimal("25"), output_material=pig_iron)

        self.client.force_authenticate(user=self.supervisor)
        denied = self.client.post("/api/v1/admin/stock-repair/", {"source_type": "production"}, format="json")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.admin)
        response = self.client.post("/api/v1/admin/stock-repair/", {"source_type": "production"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["fixed_count"], 1)
        self.assertEqual(response.json()["total_adjusted"], "25.000")
        self.assertTrue(AuditLog.objects.filter(action="stock.repair").exists())

        audit = self.client.get("/api/v1/admin/stock-audit/")
        self.assertEqual(audit.status_code, 200)
        self.assertTrue(audit.json()["consistent"])

    def test_verify_reports_consistency_error(self):
        Material.objects.filter(pk=self.material.pk).update(current_stock=Decimal("7"))
        self.client.force_authenticate(user=self.operator)

        response = self.client.get(f"/api/v1/materials/{self.material.id}/verify/")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "consistency_error")
        self.assertEqual(payload["errors"]["material_id"], str(self.material.id))
        self.assertEqual(payload["errors"]["log_balance"], "0")

    def test_supplier_balances_report(self):
        create_delivery(self.order.id, "ABC1D23", Decimal("250"), date=date(2024, 5, 2))
        self.client.force_authenticate(user=self.operator)

        response = self.client.get("/api/v1/reports/supplier-balances/")

        self.assertEqual(response.status_code, 200)
        row = response.json()[0]
        self.assertEqual(row["supplier_name"], self.supplier.name)
        self.assertEqual(row["total_remaining"], "750.000")
        self.assertEqual(row["materials"], [self.material.name])
        self.assertEqual(row["recent_deliveries"][0]["plate"], "ABC1D23")

    def test_material_with_active_supplier_cannot_be_deactivated(self):
        self.client.force_authenticate(user=self.admin)

        refused = self.client.delete(f"/api/v1/materials/{self.material.id}/")
        self.assertEqual(refused.status_code, 400)

        self.client.delete(f"/api/v1/suppliers/{self.supplier.id}/")
        accepted = self.client.delete(f"/api/v1/materials/{self.material.id}/")
        self.assertEqual(accepted.status_code, 204)
        self.material.refresh_from_db()
        self.assertFalse(self.material.is_active)

    def test_current_stock_is_read_only_over_api(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/materials/{self.material.id}/", {"current_stock": "999", "unit": "kg"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["current_stock"], "0.000")
        self.assertEqual(response.json()["unit"], "kg")

    def test_order_status_change_and_cancelled_exclusion(self):
        self.client.force_authenticate(user=self.operator)
        denied = self.client.post(f"/api/v1/purchase-orders/{self.order.id}/status/", {"status": "cancelled"}, format="json")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.supervisor)
        response = self.client.post(f"/api/v1/purchase-orders/{self.order.id}/status/", {"status": "cancelled"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["order_status"], "cancelled")
        self.assertIsNone(self._open_order_row())

    def test_create_purchase_order_over_api(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/purchase-orders/",
            {"date": str(date.today() - timedelta(days=1)), "supplier": str(self.supplier.id), "material": str(self.material.id), "quantity": "300"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["remaining"], "300.000")
        self.assertEqual(response.json()["status"], STATUS_OPEN)
