"""
Resize endpoint, served under /resize and the short /r/ alias
"""

from fastapi import APIRouter, Depends, Request, Response
from typing import Optional

from ..deps import get_resize_service
from ..service import ResizeService

router = APIRouter(tags=["resize"])


@router.get("/resize")
@router.get("/r/")
@router.get("/r/{path:path}")
def resize(request: Request, src: Optional[str] = None,
           service: ResizeService = Depends(get_resize_service)) -> Response:
    """Fetch, transform and cache a remote image.

    Runs in the threadpool: upstream fetch, decode and encode all block.
    """
    result = service.handle(src, request.query_params, request.headers)
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.media_type,
        headers=result.headers,
    )
