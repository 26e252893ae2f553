"""Provider webhook endpoint.

The body is read as raw bytes: signatures are computed over the exact
bytes the provider sent.
"""

from fastapi import APIRouter, Path, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from settlement_engine.api.dependencies import Webhooks

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    request: Request,
    webhooks: Webhooks,
    provider: str = Path(min_length=1, max_length=32),
) -> JSONResponse:
    """Verify, settle and acknowledge one provider webhook."""
    body = await request.body()
    ack = await run_in_threadpool(webhooks.handle, provider, body, dict(request.headers))
    return JSONResponse(status_code=ack.status_code, content=ack.body)
