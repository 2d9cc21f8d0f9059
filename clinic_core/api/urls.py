# clinic_core/api/urls.py
from __future__ import annotations

from rest_framework.routers import DefaultRouter

from clinic_core.billing.api.views import InvoiceViewSet, PaymentViewSet

router = DefaultRouter()

router.register(r"billing/invoices", InvoiceViewSet, basename="billing-invoices")
router.register(r"billing/payments", PaymentViewSet, basename="billing-payments")

urlpatterns = router.urls
