from django.contrib import admin

from clinic_core.catalog.models import Service


@admin.register(Service)
class ServiceAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "category", "price", "is_active")
    list_filter = ("is_active", "category")
    search_fields = ("code", "name")
    ordering = ("code",)
