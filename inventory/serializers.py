from rest_framework import serializers

from inventory.models import Delivery, Material, Movement, PurchaseOrder, Supplier
from inventory.reconciliation import REPAIR_SOURCES
from inventory.services import is_below_alert


def _quantity_field(**kwargs):
    return serializers.DecimalField(max_digits=14, decimal_places=3, **kwargs)


class MaterialSerializer(serializers.ModelSerializer):
    below_min_stock = serializers.SerializerMethodField()

    class Meta:
        model = Material
        fields = ["id", "name", "unit", "current_stock", "min_stock_alert", "below_min_stock", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "current_stock", "is_active", "created_at", "updated_at"]

    def get_below_min_stock(self, obj):
        return is_below_alert(obj)

    def update(self, instance, validated_data):
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        instance.save(update_fields=[*validated_data, "updated_at"])
        instance.refresh_from_db(fields=["current_stock"])
        return instance


class SupplierSerializer(serializers.ModelSerializer):
    material_name = serializers.CharField(source="material.name", read_only=True, default=None)

    class Meta:
        model = Supplier
        fields = ["id", "name", "material", "material_name", "default_price", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_material(self, value):
        if value is not None and not value.is_active:
            raise serializers.ValidationError("Material is inactive.")
        return value


class PurchaseOrderSerializer(serializers.ModelSerializer):
    class Meta:
        model = PurchaseOrder
        fields = ["id", "date", "supplier", "material", "quantity", "status", "notes", "created_at", "updated_at"]
        read_only_fields = ["id", "status", "created_at", "updated_at"]

    def validate_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("Ordered quantity must be greater than zero.")
        return value

    def validate(self, attrs):
        if not attrs["supplier"].is_active:
            raise serializers.ValidationError({"supplier": "Supplier is inactive."})
        if not attrs["material"].is_active:
            raise serializers.ValidationError({"material": "Material is inactive."})
        return attrs


class PurchaseOrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=PurchaseOrder.Status.choices)


class OrderViewSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    date = serializers.DateField()
    supplier_id = serializers.UUIDField()
    supplier_name = serializers.CharField()
    material_id = serializers.UUIDField()
    material_name = serializers.CharField()
    unit = serializers.CharField()
    quantity = _quantity_field()
    order_status = serializers.CharField()
    status = serializers.CharField()
    delivered = _quantity_field()
    remaining = _quantity_field()
    delivered_fiscal = _quantity_field()
    remaining_fiscal = _quantity_field()
    divergence = _quantity_field()
    deliveries_count = serializers.IntegerField()
    last_delivery_date = serializers.DateField(allow_null=True)
    notes = serializers.CharField(allow_blank=True)


class DeliverySerializer(serializers.ModelSerializer):
    divergence = _quantity_field(read_only=True, allow_null=True)

    class Meta:
        model = Delivery
        fields = [
            "id",
            "purchase_order",
            "plate",
            "weight_measured",
            "weight_fiscal",
            "divergence",
            "driver_name",
            "date",
            "deleted_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class DeliveryCreateSerializer(serializers.Serializer):
    order = serializers.UUIDField()
    plate = serializers.CharField(max_length=32)
    weight_measured = _quantity_field()
    weight_fiscal = _quantity_field(required=False, allow_null=True)
    driver_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    date = serializers.DateField(required=False, allow_null=True)


class DeliveryUpdateSerializer(serializers.Serializer):
    plate = serializers.CharField(max_length=32, required=False)
    weight_measured = _quantity_field(required=False)
    weight_fiscal = _quantity_field(required=False, allow_null=True)
    driver_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    date = serializers.DateField(required=False)


class MovementSerializer(serializers.ModelSerializer):
    material_name = serializers.CharField(source="material.name", read_only=True)

    class Meta:
        model = Movement
        fields = ["id", "material", "material_name", "quantity", "movement_type", "reference_id", "date", "notes", "created_at"]
        read_only_fields = fields


class MovementPostSerializer(serializers.Serializer):
    material = serializers.UUIDField()
    quantity = _quantity_field()
    movement_type = serializers.ChoiceField(choices=Movement.Type.choices)
    reference_id = serializers.UUIDField(required=False, allow_null=True)
    date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class RecentDeliverySerializer(serializers.Serializer):
    id = serializers.UUIDField()
    date = serializers.DateField()
    plate = serializers.CharField()
    material_name = serializers.CharField()
    weight_measured = _quantity_field()
    weight_fiscal = _quantity_field(allow_null=True)
    divergence = _quantity_field(allow_null=True)


class SupplierBalanceSerializer(serializers.Serializer):
    supplier_id = serializers.UUIDField()
    supplier_name = serializers.CharField()
    total_contracted = _quantity_field()
    total_delivered = _quantity_field()
    total_remaining = _quantity_field()
    total_delivered_fiscal = _quantity_field()
    total_remaining_fiscal = _quantity_field()
    open_orders_count = serializers.IntegerField()
    materials = serializers.ListField(child=serializers.CharField())
    recent_deliveries = RecentDeliverySerializer(many=True)


class StockRepairRequestSerializer(serializers.Serializer):
    source_type = serializers.ChoiceField(choices=REPAIR_SOURCES)
    material_id = serializers.UUIDField(required=False, allow_null=True)
    dry_run = serializers.BooleanField(required=False, default=False)


class RepairResultSerializer(serializers.Serializer):
    source_type = serializers.CharField()
    dry_run = serializers.BooleanField()
    fixed_count = serializers.IntegerField()
    total_adjusted = _quantity_field()
    log = serializers.ListField(child=serializers.CharField())


class StockMismatchSerializer(serializers.Serializer):
    material_id = serializers.UUIDField()
    material_name = serializers.CharField()
    current_stock = _quantity_field()
    log_balance = _quantity_field()
    drift = _quantity_field()
