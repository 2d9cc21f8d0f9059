# clinic_core/catalog/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models

from clinic_core.common.models import UUIDModel


class Service(UUIDModel):
    """
    Price catalog. Invoice items may reference a service, but the price is
    copied onto the item when billed and never re-derived from here.
    """
    code = models.SlugField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    category = models.CharField(max_length=64, blank=True)

    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "catalog_service"
        indexes = [
            models.Index(fields=["is_active", "category"], name="catalog_active_cat_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"
