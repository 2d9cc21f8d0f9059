# clinic_core/iam/auth.py

from __future__ import annotations

from django.conf import settings
from rest_framework_simplejwt.authentication import JWTAuthentication

DEFAULT_ACCESS_COOKIE = "clinic_access"


def access_cookie_name() -> str:
    return settings.SIMPLE_JWT.get("AUTH_COOKIE", DEFAULT_ACCESS_COOKIE)


class CookieOrHeaderJWTAuthentication(JWTAuthentication):
    """
    Bearer header first, then the HttpOnly access-token cookie.

    Tokens are issued by the clinic's auth service; only verification happens here.
    An invalid cookie token is rejected (401), not ignored.
    """

    def authenticate(self, request):
        if self.get_header(request) is not None:
            return super().authenticate(request)

        raw_token = request.COOKIES.get(access_cookie_name())
        if not raw_token:
            return None

        token = self.get_validated_token(raw_token)
        return self.get_user(token), token
