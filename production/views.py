from rest_framework import status, viewsets
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from production.models import ProductionRecord
from production.serializers import ProductionRecordSerializer, ProductionWriteSerializer
from production.services import (
    create_production,
    delete_production,
    get_production,
    production_snapshot,
    update_production,
)


class ProductionRecordViewSet(viewsets.ModelViewSet):
    queryset = ProductionRecord.objects.select_related("output_material").prefetch_related("consumptions__material")
    serializer_class = ProductionRecordSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "ledger.view",
        "retrieve": "ledger.view",
        "create": "production.manage",
        "update": "production.manage",
        "partial_update": "production.manage",
        "destroy": "production.manage",
    }

    def get_queryset(self):
        qs = super().get_queryset().order_by("-date", "-created_at")
        start = self.request.query_params.get("start")
        end = self.request.query_params.get("end")
        if start:
            qs = qs.filter(date__gte=start)
        if end:
            qs = qs.filter(date__lte=end)
        return qs

    def _audit(self, action, record_id, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="production",
            entity_id=record_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def create(self, request, *args, **kwargs):
        serializer = ProductionWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        kwargs = serializer.to_service_kwargs()
        if "tons_produced" not in kwargs:
            raise ValidationError({"tons_produced": ["This field is required."]})
        record = create_production(**kwargs)
        record = get_production(record.id)
        self._audit("production.create", record.id, after_snapshot=production_snapshot(record))
        return Response(ProductionRecordSerializer(record).data, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        record = self.get_object()
        before_snapshot = production_snapshot(record)
        serializer = ProductionWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        update_production(record.id, **serializer.to_service_kwargs())
        record = get_production(record.id)
        self._audit("production.update", record.id, before_snapshot=before_snapshot, after_snapshot=production_snapshot(record))
        return Response(ProductionRecordSerializer(record).data)

    def partial_update(self, request, *args, **kwargs):
        return self.update(request, *args, **kwargs)

    def destroy(self, request, *args, **kwargs):
        record = self.get_object()
        before_snapshot = production_snapshot(record)
        delete_production(record.id)
        self._audit("production.delete", record.id, before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)
