# clinic_core/patients/models.py
from django.conf import settings
from django.db import models

from clinic_core.common.models import UUIDModel


class Patient(UUIDModel):
    """
    Patient record. `user` links the portal login that may read this
    patient's invoices and payments.
    """
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="patient_record",
        null=True,
        blank=True,
    )

    full_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)
    date_of_birth = models.DateField(null=True, blank=True)

    # clinic-local medical record number
    mrn = models.CharField(max_length=64, unique=True)

    class Meta:
        db_table = "patients_patient"
        indexes = [
            models.Index(fields=["full_name"], name="patients_full_name_idx"),
            models.Index(fields=["phone"], name="patients_phone_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.full_name} ({self.mrn})"
