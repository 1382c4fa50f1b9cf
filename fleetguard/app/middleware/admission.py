"""Admission control middleware.

Runs every request through the AdmissionController and turns denials
into distinct HTTP responses, so operators can tell abuse prevention
(429) from fleet backpressure and local shedding (503).
"""

import hashlib
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from fleetguard.app.core.logging import get_log_context, get_logger
from fleetguard.app.exceptions import AdmissionDenied, denial_for
from fleetguard.app.services.admission import AdmissionController, get_admission_controller

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce admission control on requests.

    Identity is the API key if available, otherwise the client IP.
    Requests carrying ``X-Request-Priority: high`` bypass fleet and
    worker shedding but are still rate limited.

    Slots are released once the handler returns its response. For a
    streaming response that is before the body has been sent, so long
    streams are not counted as in flight while they drain.
    """

    def __init__(
        self,
        app,
        controller: Optional[AdmissionController] = None,
        priority_header: str = "X-Request-Priority",
    ):
        super().__init__(app)
        self.controller = controller or get_admission_controller()
        self.priority_header = priority_header

    def _get_client_key(self, request: Request) -> Optional[str]:
        """Get admission identity for the request.

        API keys and IPs are hashed with SHA-256 so raw values never
        reach the store or the logs.

        Returns:
            Identity string, or None if the API key is too long
        """
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            api_key = auth[7:].strip()
            if len(api_key) > MAX_API_KEY_LENGTH:
                return None
            # 32 hex chars (128 bits) for collision resistance
            key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
            return f"apikey:{key_hash}"

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(',')[0].strip()
        else:
            client_ip = request.client.host if request.client else 'unknown'
        ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
        return f"ip:{ip_hash}"

    def _is_high_priority(self, request: Request) -> bool:
        return request.headers.get(self.priority_header, "").strip().lower() == "high"

    @staticmethod
    def denial_response(exc: AdmissionDenied) -> JSONResponse:
        """Build the HTTP response for a denial."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.outcome.value,
                "message": exc.message,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with admission control."""
        identity = self._get_client_key(request)
        if identity is None:
            return JSONResponse(
                status_code=400,
                content={
                    "error": "invalid_api_key",
                    "message": f"API key too long (max {MAX_API_KEY_LENGTH} characters)",
                },
            )

        decision = await self.controller.check(identity, self._is_high_priority(request))
        if not decision.allowed:
            logger.info(
                f"Request denied: {decision.outcome.value}",
                extra=get_log_context(
                    identity=identity,
                    outcome=decision.outcome.value,
                    path=request.url.path,
                    method=request.method,
                ),
            )
            return self.denial_response(denial_for(decision.outcome, identity))

        try:
            response = await call_next(request)
        finally:
            await self.controller.release(decision)

        if decision.tokens_remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(int(decision.tokens_remaining))
        return response
