# Middleware package init
"""
Bookflow Backend — Middleware Package
=======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters):
    Request → [Rate Limit] → [Request ID] → [Logging] → [CORS] → Route Handler

    1. Rate Limit first: abusive clients are rejected before any work
    2. Request ID: correlation id for log lines and the X-Request-ID header
    3. Logging: one access line per request with status and duration
    4. CORS: FastAPI's CORSMiddleware (credentials allowed for cookie sessions)

    Responses travel the chain in reverse, so the request id header and the
    access log see the final status code.
"""
