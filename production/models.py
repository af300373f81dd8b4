import uuid

from django.db import models

from inventory.models import Material


class ProductionRecord(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    date = models.DateField()
    tons_produced = models.DecimalField(max_digits=14, decimal_places=3)
    output_material = models.ForeignKey(
        Material,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="production_records",
    )
    technical_notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["date", "created_at"], name="production_date_idx")]


class ProductionConsumption(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    production = models.ForeignKey(ProductionRecord, on_delete=models.CASCADE, related_name="consumptions")
    material = models.ForeignKey(Material, on_delete=models.PROTECT, related_name="consumptions")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["production", "material"], name="uniq_consumption_per_material"),
        ]
