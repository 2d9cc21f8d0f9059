# clinic_core/patients/selectors.py
from __future__ import annotations

from uuid import UUID

from clinic_core.patients.models import Patient


def get_patient_or_none(*, patient_id: UUID) -> Patient | None:
    return Patient.objects.filter(id=patient_id).first()
