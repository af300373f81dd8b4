from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import (
    DeliveryViewSet,
    MaterialViewSet,
    MovementViewSet,
    PurchaseOrderViewSet,
    StockAuditView,
    StockRepairView,
    SupplierBalancesReportView,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"materials", MaterialViewSet, basename="material")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"purchase-orders", PurchaseOrderViewSet, basename="purchase-order")
router.register(r"deliveries", DeliveryViewSet, basename="delivery")
router.register(r"movements", MovementViewSet, basename="movement")

urlpatterns = router.urls + [
    path("reports/supplier-balances/", SupplierBalancesReportView.as_view(), name="supplier-balances"),
    path("admin/stock-repair/", StockRepairView.as_view(), name="stock-repair"),
    path("admin/stock-audit/", StockAuditView.as_view(), name="stock-audit"),
]
