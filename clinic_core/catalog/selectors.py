from __future__ import annotations

from uuid import UUID

from clinic_core.catalog.models import Service


def get_service_or_none(*, service_id: UUID) -> Service | None:
    return Service.objects.filter(id=service_id).first()


def get_active_service(*, code: str) -> Service | None:
    return Service.objects.filter(code=code, is_active=True).first()
