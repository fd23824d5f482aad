"""Device telemetry webhook."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from auth import SIGNATURE_HEADER, api_key_header
from ingestion_gateway import IngestionGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingestion"])

WEBHOOK_PATH = "/iot/webhook"
ALLOWED_METHODS = "POST, OPTIONS"


def get_gateway(request: Request) -> IngestionGateway:
    return request.app.state.gateway


@router.post(WEBHOOK_PATH)
async def receive_telemetry(
    request: Request,
    gateway: IngestionGateway = Depends(get_gateway),
    api_key: Optional[str] = Depends(api_key_header),
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
):
    """
    Receive one telemetry sample from a warehouse device.

    Expected headers: X-API-Key: <device api key>, optionally
    X-Signature: <hex or base64 HMAC-SHA256 of the canonical body>
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    # Store I/O is blocking, keep it off the event loop
    result = await run_in_threadpool(gateway.ingest, body, api_key, signature)
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.options(WEBHOOK_PATH, include_in_schema=False)
async def webhook_options():
    """Answer OPTIONS requests that are not CORS preflights."""
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers={"Allow": ALLOWED_METHODS})


@router.api_route(WEBHOOK_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def webhook_method_not_allowed(request: Request):
    logger.debug(f"Rejected {request.method} on webhook")
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={"error": "Method not allowed"},
        headers={"Allow": ALLOWED_METHODS},
    )
