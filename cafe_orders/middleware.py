"""Middleware that assigns and propagates a request identifier.

Every incoming HTTP request receives a request identifier. The identifier is
read from the incoming ``X-Request-ID`` header when provided by the client,
or generated server-side (UUIDv4) otherwise. The id is stored on
``request.state`` and in a context variable so code running downstream
(storage adapters, the payment processor client, log filters) can access it
without passing the value explicitly.

Behavior contract:
- If the incoming request carries ``X-Request-ID``, that value is reused.
- Otherwise a new UUIDv4 is generated.
- The response includes the same id in the ``X-Request-ID`` header.
"""

import contextvars
import logging
import uuid

from fastapi import Request

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
HEADER = "X-Request-ID"

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next):
    """Populate the request id, run the request and echo the id back.

    Args:
        request: Incoming Starlette/FastAPI request.
        call_next: Next ASGI handler in the chain.

    Returns:
        The downstream response with the ``X-Request-ID`` header set.
    """
    rid = request.headers.get(HEADER) or str(uuid.uuid4())
    request.state.request_id = rid
    token = REQUEST_ID_CTX.set(rid)
    try:
        response = await call_next(request)
        logger.info(
            "request handled",
            extra={"path": request.url.path, "method": request.method, "status": response.status_code},
        )
    finally:
        REQUEST_ID_CTX.reset(token)
    response.headers[HEADER] = rid
    return response
