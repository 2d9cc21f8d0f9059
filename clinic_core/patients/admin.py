from django.contrib import admin

from clinic_core.patients.models import Patient


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ("full_name", "mrn", "phone", "email", "user", "created_at")
    search_fields = ("full_name", "mrn", "phone", "email")
    ordering = ("-created_at",)
