from __future__ import annotations

from uuid import UUID

from clinic_core.appointments.models import Appointment


def get_appointment_or_none(*, appointment_id: UUID) -> Appointment | None:
    return Appointment.objects.filter(id=appointment_id).first()
