from crunchplane.infra.http import Auth, AuthError, HttpClient, HttpError, OAuth2Auth

__all__ = [
    "Auth",
    "AuthError",
    "HttpClient",
    "HttpError",
    "OAuth2Auth",
]
