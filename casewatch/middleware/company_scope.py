# ==== COMPANY SCOPE MIDDLEWARE ==== #

"""
Company scoping middleware for casewatch.

Every case, rule and escalation belongs to a company. The caller names the
company in the ``X-Company-Id`` header; the middleware validates it and
injects it into the request scope for handlers.
"""

from fastapi import HTTPException, Request
from starlette.types import ASGIApp, Receive, Scope, Send


COMPANY_HEADER = b"x-company-id"


# ==== UTILITY FUNCTIONS ==== #

def get_company_id(request: Request) -> str:
    """
    Company id injected by the middleware.

    Raises:
        HTTPException: 400 when the request carries no company scope
    """
    company_id = request.scope.get("company_id")
    if not company_id:
        raise HTTPException(status_code=400, detail="Missing X-Company-Id header")
    return company_id


# ==== COMPANY SCOPE MIDDLEWARE CLASS ==== #

class CompanyScopeMiddleware:
    """
    ASGI middleware extracting and validating the company header.

    Args:
        app: ASGI application instance
        require_company: Reject scoped requests without the header
    """

    def __init__(self, app: ASGIApp, require_company: bool = True):
        self.app = app
        self.require_company = require_company

        # --► PATHS EXEMPT FROM COMPANY VALIDATION
        self.exempt_paths = {
            "/healthz",
            "/readyz",
            "/metrics",
            "/docs",
            "/redoc",
            "/openapi.json",
        }

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # ⚠️ Always allow OPTIONS requests (CORS preflight)
        if scope["method"] == "OPTIONS" or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        headers = dict(scope["headers"])
        company_id = headers.get(COMPANY_HEADER)

        if self.require_company and not company_id:
            await self._send_error_response(send, 400, '{"detail":"Missing X-Company-Id header"}')
            return

        if company_id and not self._is_valid_company_id(company_id.decode()):
            await self._send_error_response(send, 400, '{"detail":"Invalid X-Company-Id format"}')
            return

        if company_id:
            scope["company_id"] = company_id.decode()

        await self.app(scope, receive, send)

    async def _send_error_response(self, send: Send, status: int, body: str) -> None:
        await send({
            "type": "http.response.start",
            "status": status,
            "headers": [
                [b"content-type", b"application/json"],
            ],
        })
        await send({
            "type": "http.response.body",
            "body": body.encode(),
        })

    def _is_valid_company_id(self, company_id: str) -> bool:
        if not company_id or len(company_id) > 64:
            return False

        # Alphanumeric characters, hyphens and underscores only
        return all(c.isalnum() or c in "-_" for c in company_id)
