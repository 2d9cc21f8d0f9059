# clinic_core/api/urls_v1.py
"""
URLconf used only for schema generation, so the OpenAPI document lists the
/api/v1/ routes once instead of also listing the unversioned alias.
"""
from django.urls import include, path

urlpatterns = [
    path("api/v1/", include("clinic_core.api.urls")),
]
