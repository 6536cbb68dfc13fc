# ABOUTME: The single action endpoint serving every table operation
# ABOUTME: Converts the HTTP request into an ApiRequest once and renders the pipeline's ApiResponse

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from tablegate.dependencies import get_pipeline
from tablegate.models.requests import ApiRequest
from tablegate.services.pipeline import Pipeline

router = APIRouter()

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def read_body(request: Request) -> Any:
    """
    Parse the request body as JSON, or as form fields for form posts.

    Returns None for an empty or malformed body; the pipeline reports it
    as a validation error for actions that need one.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


@router.api_route(
    "/api",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    responses={
        400: {"description": "Validation error", "content": {"application/json": {"example": {"error": "Invalid table name"}}}},
        401: {"description": "Unauthorized", "content": {"application/json": {"example": {"error": "Unauthorized"}}}},
        403: {"description": "Forbidden", "content": {"application/json": {"example": {"error": "Forbidden: readonly cannot create on users"}}}},
        429: {"description": "Rate limit exceeded"},
    },
)
async def api_endpoint(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Run one action against the database.

    The action and its parameters come from the query string
    (`action`, `table`, `id`, `filter`, `sort`, `fields`, `page`, `page_size`);
    write actions take a JSON body.
    """
    api_request = ApiRequest.build(
        method=request.method,
        params=dict(request.query_params),
        headers=dict(request.headers),
        body=await read_body(request),
        client_ip=request.client.host if request.client else None,
    )
    response = await run_in_threadpool(pipeline.handle, api_request)
    return JSONResponse(
        status_code=response.status,
        content=jsonable_encoder(response.payload),
        headers=response.headers,
    )
