"""Response headers for a JSON API that hands out tokens.

Learn: Nothing here is rendered by a browser, so frame and XSS-filter
headers buy nothing. What matters:
- X-Content-Type-Options: nosniff, so JSON is never reinterpreted as HTML
- Referrer-Policy: no-referrer, so confirmation links (username + token in
  the path) don't leak to third parties through the Referer header
- Cache-Control: no-store on /auth and /users, which return tokens and
  profile data that no proxy or browser cache may keep
- Strict-Transport-Security on HTTPS, so tokens never travel in clear text
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

NO_STORE_PREFIXES = ("/api/v1/auth/", "/api/v1/users")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000"
        return response
