# clinic_core/catalog/services.py
from __future__ import annotations

from rest_framework.exceptions import ValidationError

from clinic_core.billing.money import MONEY_MAX, MONEY_MIN, validate_money
from clinic_core.catalog.models import Service


class ServiceCatalogService:
    @staticmethod
    def upsert(
        *,
        code: str,
        name: str,
        price,
        category: str = "",
        is_active: bool = True,
    ) -> Service:
        code = (code or "").strip()
        if not code:
            raise ValidationError({"code": "Service code is required."})

        price = validate_money(price, field="price", min_value=MONEY_MIN, max_value=MONEY_MAX)

        obj, _ = Service.objects.update_or_create(
            code=code,
            defaults={
                "name": name,
                "price": price,
                "category": category or "",
                "is_active": is_active,
            },
        )
        return obj
