from rest_framework import serializers

from production.models import ProductionConsumption, ProductionRecord


class ProductionConsumptionSerializer(serializers.ModelSerializer):
    material_name = serializers.CharField(source="material.name", read_only=True)

    class Meta:
        model = ProductionConsumption
        fields = ["material", "material_name", "quantity"]


class ProductionRecordSerializer(serializers.ModelSerializer):
    output_material_name = serializers.CharField(source="output_material.name", read_only=True, default=None)
    consumptions = ProductionConsumptionSerializer(many=True, read_only=True)

    class Meta:
        model = ProductionRecord
        fields = [
            "id",
            "date",
            "tons_produced",
            "output_material",
            "output_material_name",
            "technical_notes",
            "consumptions",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ConsumptionInputSerializer(serializers.Serializer):
    material = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)


class ProductionWriteSerializer(serializers.Serializer):
    date = serializers.DateField(required=False)
    tons_produced = serializers.DecimalField(max_digits=14, decimal_places=3, required=False)
    output_material = serializers.UUIDField(required=False, allow_null=True)
    technical_notes = serializers.CharField(required=False, allow_blank=True)
    consumptions = ConsumptionInputSerializer(many=True, required=False)

    def validate_consumptions(self, value):
        seen = set()
        for item in value:
            if item["material"] in seen:
                raise serializers.ValidationError("Each material can be consumed only once per production record.")
            seen.add(item["material"])
        return value

    def to_service_kwargs(self):
        data = dict(self.validated_data)
        kwargs = {}
        for field in ("date", "tons_produced", "technical_notes"):
            if field in data:
                kwargs[field] = data[field]
        if "output_material" in data:
            kwargs["output_material_id"] = data["output_material"]
        if "consumptions" in data:
            kwargs["consumptions"] = {item["material"]: item["quantity"] for item in data["consumptions"]}
        return kwargs
