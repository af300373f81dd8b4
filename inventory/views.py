from django.utils import timezone
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.pagination import StandardResultsSetPagination
from common.permissions import RoleCapabilityPermission
from common.utils import to_json_compatible
from inventory.deliveries import (
    create_delivery,
    delete_delivery,
    delivery_snapshot,
    get_delivery,
    list_deliveries,
    update_delivery,
)
from inventory.fulfillment import get_supplier_balances, list_purchase_orders, order_view
from inventory.models import Delivery, Material, Movement, PurchaseOrder, Supplier
from inventory.reconciliation import audit_stock_accounts, run_stock_repair, verify_stock_account
from inventory.serializers import (
    DeliveryCreateSerializer,
    DeliverySerializer,
    DeliveryUpdateSerializer,
    MaterialSerializer,
    MovementPostSerializer,
    MovementSerializer,
    OrderViewSerializer,
    PurchaseOrderSerializer,
    PurchaseOrderStatusSerializer,
    RepairResultSerializer,
    StockMismatchSerializer,
    StockRepairRequestSerializer,
    SupplierBalanceSerializer,
    SupplierSerializer,
)
from inventory.services import deactivate_material, material_snapshot, movement_snapshot, post_movement

VIEW = "ledger.view"
MANAGE = "admin.records.manage"


def _truthy(value):
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class AuditedMutationMixin:
    audit_entity = None

    def _audit(self, *, action, instance_id, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )


class MaterialViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Material.objects.all()
    serializer_class = MaterialSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": VIEW,
        "retrieve": VIEW,
        "verify": VIEW,
        "create": MANAGE,
        "update": MANAGE,
        "partial_update": MANAGE,
        "destroy": MANAGE,
    }
    audit_entity = "material"

    def get_queryset(self):
        qs = super().get_queryset()
        active = self.request.query_params.get("active")
        if active is not None:
            qs = qs.filter(is_active=_truthy(active))
        return qs

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action="material.create", instance_id=instance.id, after_snapshot=material_snapshot(instance))

    def perform_update(self, serializer):
        before_snapshot = material_snapshot(serializer.instance)
        instance = serializer.save()
        self._audit(action="material.update", instance_id=instance.id, before_snapshot=before_snapshot, after_snapshot=material_snapshot(instance))

    def perform_destroy(self, instance):
        before_snapshot = material_snapshot(instance)
        deactivate_material(instance)
        self._audit(action="material.deactivate", instance_id=instance.id, before_snapshot=before_snapshot, after_snapshot=material_snapshot(instance))

    @action(detail=True, methods=["get"], url_path="verify")
    def verify(self, request, pk=None):
        material = self.get_object()
        return Response(to_json_compatible(verify_stock_account(material.id)))


class SupplierViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Supplier.objects.select_related("material")
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": VIEW,
        "retrieve": VIEW,
        "create": MANAGE,
        "update": MANAGE,
        "partial_update": MANAGE,
        "destroy": MANAGE,
    }
    audit_entity = "supplier"

    def get_queryset(self):
        qs = super().get_queryset()
        active = self.request.query_params.get("active")
        if active is not None:
            qs = qs.filter(is_active=_truthy(active))
        return qs

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action="supplier.create", instance_id=instance.id, after_snapshot=serializer.data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(action="supplier.update", instance_id=instance.id, before_snapshot=before_snapshot, after_snapshot=self.get_serializer(instance).data)

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        instance.is_active = False
        instance.save(update_fields=["is_active", "updated_at"])
        self._audit(action="supplier.deactivate", instance_id=instance.id, before_snapshot=before_snapshot)


class PurchaseOrderViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = PurchaseOrder.objects.select_related("supplier", "material")
    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": VIEW,
        "retrieve": VIEW,
        "open": VIEW,
        "deliveries": VIEW,
        "create": MANAGE,
        "set_status": MANAGE,
    }
    http_method_names = ["get", "post", "head", "options"]
    audit_entity = "purchase_order"

    def _paginated_views(self, views):
        page = self.paginate_queryset(views)
        if page is not None:
            return self.get_paginated_response(OrderViewSerializer(page, many=True).data)
        return Response(OrderViewSerializer(views, many=True).data)

    def list(self, request, *args, **kwargs):
        include_completed = _truthy(request.query_params.get("include_completed", "true"))
        return self._paginated_views(list_purchase_orders(include_completed=include_completed))

    def retrieve(self, request, *args, **kwargs):
        return Response(OrderViewSerializer(order_view(self.get_object())).data)

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = serializer.save()
        self._audit(action="purchase_order.create", instance_id=order.id, after_snapshot=serializer.data)
        return Response(OrderViewSerializer(order_view(order, deliveries=[])).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["get"], url_path="open")
    def open(self, request):
        return self._paginated_views(list_purchase_orders(include_completed=False))

    @action(detail=True, methods=["get"], url_path="deliveries")
    def deliveries(self, request, pk=None):
        return Response(DeliverySerializer(list_deliveries(pk), many=True).data)

    @action(detail=True, methods=["post"], url_path="status")
    def set_status(self, request, pk=None):
        order = self.get_object()
        serializer = PurchaseOrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before_status = order.status
        order.status = serializer.validated_data["status"]
        order.save(update_fields=["status", "updated_at"])
        self._audit(
            action="purchase_order.status",
            instance_id=order.id,
            before_snapshot={"status": before_status},
            after_snapshot={"status": order.status},
        )
        return Response(OrderViewSerializer(order_view(order)).data)


class DeliveryViewSet(AuditedMutationMixin, viewsets.ViewSet):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": VIEW,
        "retrieve": VIEW,
        "create": "delivery.manage",
        "update": "delivery.manage",
        "partial_update": "delivery.manage",
        "destroy": "delivery.manage",
    }
    audit_entity = "delivery"

    def list(self, request):
        order_id = request.query_params.get("order")
        if order_id:
            deliveries = list_deliveries(order_id)
        else:
            deliveries = Delivery.objects.live().order_by("-date", "-created_at")
        paginator = StandardResultsSetPagination()
        page = paginator.paginate_queryset(deliveries, request, view=self)
        return paginator.get_paginated_response(DeliverySerializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        return Response(DeliverySerializer(get_delivery(pk)).data)

    def create(self, request):
        serializer = DeliveryCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        delivery = create_delivery(
            data["order"],
            data["plate"],
            data["weight_measured"],
            weight_fiscal=data.get("weight_fiscal"),
            driver_name=data.get("driver_name", ""),
            date=data.get("date"),
        )
        self._audit(action="delivery.create", instance_id=delivery.id, after_snapshot=delivery_snapshot(delivery))
        return Response(DeliverySerializer(delivery).data, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None):
        serializer = DeliveryUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before_snapshot = delivery_snapshot(get_delivery(pk))
        delivery = update_delivery(pk, **serializer.validated_data)
        self._audit(action="delivery.update", instance_id=delivery.id, before_snapshot=before_snapshot, after_snapshot=delivery_snapshot(delivery))
        return Response(DeliverySerializer(delivery).data)

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk)

    def destroy(self, request, pk=None):
        before_snapshot = delivery_snapshot(get_delivery(pk))
        delivery = delete_delivery(pk)
        self._audit(action="delivery.delete", instance_id=delivery.id, before_snapshot=before_snapshot, after_snapshot=delivery_snapshot(delivery))
        return Response(status=status.HTTP_204_NO_CONTENT)


class MovementViewSet(AuditedMutationMixin, viewsets.ReadOnlyModelViewSet):
    queryset = Movement.objects.select_related("material")
    serializer_class = MovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": VIEW, "retrieve": VIEW, "create": "stock.adjust"}
    audit_entity = "movement"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        material_id = self.request.query_params.get("material")
        reference_id = self.request.query_params.get("reference")
        movement_type = self.request.query_params.get("type")
        if material_id:
            qs = qs.filter(material_id=material_id)
        if reference_id:
            qs = qs.filter(reference_id=reference_id)
        if movement_type:
            qs = qs.filter(movement_type=movement_type)
        return qs

    def create(self, request, *args, **kwargs):
        serializer = MovementPostSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        movement, created = post_movement(
            material_id=data["material"],
            quantity=data["quantity"],
            movement_type=data["movement_type"],
            reference_id=data.get("reference_id"),
            date=data.get("date"),
            notes=data.get("notes", ""),
        )
        if created:
            self._audit(action="movement.post", instance_id=movement.id, after_snapshot=movement_snapshot(movement))
        return Response(MovementSerializer(movement).data, status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)


class SupplierBalancesReportView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": VIEW}

    def get(self, request):
        limit = request.query_params.get("recent")
        recent_limit = int(limit) if limit and limit.isdigit() else None
        return Response(SupplierBalanceSerializer(get_supplier_balances(recent_limit=recent_limit), many=True).data)


class StockRepairView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.repair"}

    def post(self, request):
        serializer = StockRepairRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = run_stock_repair(data["source_type"], material_id=data.get("material_id"), dry_run=data["dry_run"])
        payload = RepairResultSerializer(result.to_dict()).data
        if not result.dry_run and result.fixed_count:
            create_audit_log_from_request(
                request,
                action="stock.repair",
                entity="material",
                entity_id=data.get("material_id"),
                after_snapshot=result.to_dict(),
            )
        return Response(payload)


class StockAuditView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": MANAGE}

    def get(self, request):
        mismatches = audit_stock_accounts()
        return Response(
            {
                "checked_at": timezone.now(),
                "consistent": not mismatches,
                "mismatches": StockMismatchSerializer(mismatches, many=True).data,
            }
        )
