# clinic_core/appointments/models.py
from django.conf import settings
from django.db import models

from clinic_core.common.models import UUIDModel
from clinic_core.patients.models import Patient


class AppointmentStatus(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    CONFIRMED = "confirmed", "Confirmed"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    NO_SHOW = "no_show", "No Show"


class Appointment(UUIDModel):
    """
    Visit an invoice may be raised against. Owned by the scheduling side;
    billing only reads it.
    """
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name="appointments")

    status = models.CharField(
        max_length=32,
        choices=AppointmentStatus.choices,
        default=AppointmentStatus.SCHEDULED,
        db_index=True,
    )
    scheduled_at = models.DateTimeField()
    reason = models.CharField(max_length=255, blank=True)

    attending_staff = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="attended_appointments",
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "appointments_appointment"
        indexes = [
            models.Index(fields=["patient", "scheduled_at"], name="appt_patient_sched_idx"),
        ]

    def __str__(self) -> str:
        return f"Appointment({self.patient_id}, {self.scheduled_at:%Y-%m-%d %H:%M})"
