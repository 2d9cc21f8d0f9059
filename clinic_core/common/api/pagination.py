from __future__ import annotations

from django.conf import settings
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class DefaultPagination(PageNumberPagination):
    """
    ?page=<n>&limit=<m>, limit capped at BILLING_MAX_PAGE_SIZE (100).
    """
    page_size = getattr(settings, "BILLING_DEFAULT_PAGE_SIZE", 20)
    page_size_query_param = "limit"
    max_page_size = getattr(settings, "BILLING_MAX_PAGE_SIZE", 100)


def paginate(request, queryset, serializer_class, *, paginator: PageNumberPagination | None = None) -> Response:
    """
    Page envelope for list endpoints: { count, next, previous, results }.
    """
    paginator = paginator or DefaultPagination()
    page = paginator.paginate_queryset(queryset, request)
    if page is None:
        return Response(serializer_class(queryset, many=True).data)
    return paginator.get_paginated_response(serializer_class(page, many=True).data)
