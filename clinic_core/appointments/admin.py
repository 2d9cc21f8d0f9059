from django.contrib import admin

from clinic_core.appointments.models import Appointment


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ("id", "patient", "status", "scheduled_at", "created_at")
    list_filter = ("status",)
    search_fields = ("id", "patient__full_name", "patient__mrn")
    autocomplete_fields = ("patient",)
    ordering = ("-scheduled_at",)
