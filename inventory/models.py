import uuid

from django.db import models


class LedgerAppendOnlyError(Exception):
    pass


class Material(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255, unique=True)
    unit = models.CharField(max_length=16, default="t")
    current_stock = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    min_stock_alert = models.DecimalField(max_digits=14, decimal_places=3, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [models.Index(fields=["is_active", "name"], name="material_active_name_idx")]

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        # current_stock is only written by F() increments in inventory.services.apply_movement.
        if not self._state.adding and kwargs.get("update_fields") is None:
            kwargs["update_fields"] = [
                field.name for field in self._meta.concrete_fields if not field.primary_key and field.name != "current_stock"
            ]
        super().save(*args, **kwargs)


class Supplier(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    material = models.ForeignKey(Material, on_delete=models.PROTECT, null=True, blank=True, related_name="suppliers")
    default_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [models.Index(fields=["is_active", "name"], name="supplier_active_name_idx")]

    def __str__(self):
        return self.name


class PurchaseOrder(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        CONFIRMED = "confirmed", "Confirmed"
        CANCELLED = "cancelled", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    date = models.DateField()
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name="purchase_orders")
    material = models.ForeignKey(Material, on_delete=models.PROTECT, related_name="purchase_orders")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "date"], name="po_status_date_idx"),
            models.Index(fields=["supplier", "status"], name="po_supplier_status_idx"),
        ]


class DeliveryQuerySet(models.QuerySet):
    def live(self):
        return self.filter(deleted_at__isnull=True)


class Delivery(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.PROTECT, related_name="deliveries")
    plate = models.CharField(max_length=32)
    weight_measured = models.DecimalField(max_digits=14, decimal_places=3)
    weight_fiscal = models.DecimalField(max_digits=14, decimal_places=3, null=True, blank=True)
    driver_name = models.CharField(max_length=255, blank=True, default="")
    date = models.DateField()
    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = DeliveryQuerySet.as_manager()

    class Meta:
        indexes = [
            models.Index(fields=["purchase_order", "deleted_at"], name="delivery_order_live_idx"),
            models.Index(fields=["date", "created_at"], name="delivery_date_idx"),
        ]

    @property
    def divergence(self):
        if self.weight_fiscal is None:
            return None
        return self.weight_measured - self.weight_fiscal


class Movement(models.Model):
    class Type(models.TextChoices):
        PURCHASE = "compra", "Purchase inbound"
        PRODUCTION_IN = "producao_entrada", "Production inbound"
        PRODUCTION_OUT = "producao_consumo", "Production consumption"
        SALE = "venda_saida", "Sale outbound"
        ADJUSTMENT = "ajuste", "Adjustment"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    material = models.ForeignKey(Material, on_delete=models.PROTECT, related_name="movements")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    movement_type = models.CharField(max_length=32, choices=Type.choices)
    reference_id = models.UUIDField(null=True, blank=True)
    date = models.DateField()
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["material", "created_at"], name="movement_material_created_idx"),
            models.Index(fields=["reference_id", "material"], name="movement_reference_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["reference_id", "material", "movement_type"],
                name="uniq_movement_origin",
                condition=models.Q(reference_id__isnull=False) & ~models.Q(movement_type="ajuste"),
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise LedgerAppendOnlyError("Movements are append-only; post a compensating adjustment instead.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerAppendOnlyError("Movements are append-only; post a compensating adjustment instead.")
