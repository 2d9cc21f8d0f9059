from drf_spectacular.extensions import OpenApiAuthenticationExtension


class CookieOrHeaderJWTAuthenticationScheme(OpenApiAuthenticationExtension):
    target_class = "clinic_core.iam.auth.CookieOrHeaderJWTAuthentication"
    name = "BearerOrCookieJWT"

    def get_security_definition(self, auto_schema):
        # Swagger "Authorize" only offers bearer; the cookie path is described instead.
        return {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": (
                "Send access token via `Authorization: Bearer <token>` "
                "or via HttpOnly cookie (clinic_access)."
            ),
        }
