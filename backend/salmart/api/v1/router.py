"""
API v1 router aggregation.

WHAT: Mount REST, SSE and WebSocket chat routes under /api/v1
WHY: Single place to register all API routes
HOW: Include each endpoint router with its OpenAPI tag
"""

from fastapi import APIRouter

from .endpoints import bargains, messages, realtime, status, streaming

API_PREFIX = "/api/v1"

api_router = APIRouter()

for endpoint, tag in (
    (status, "status"),
    (messages, "messages"),
    (bargains, "bargains"),
    (streaming, "streaming"),
    (realtime, "realtime"),
):
    api_router.include_router(endpoint.router, prefix=API_PREFIX, tags=[tag])
