import logging
import platform
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import HTMLResponse, Response
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from renderer.app.api.auth import validate_auth
from renderer.app.api.parsing import parse_request_body
from renderer.app.context import RendererContext, get_context
from renderer.app.errors import AuthenticationError
from renderer.app.services.templates import TemplateInfo

logger = logging.getLogger("renderer.api")

router = APIRouter(tags=["Rendering"])

_PAGES = Environment(
    loader=FileSystemLoader(Path(__file__).resolve().parent.parent / "templates"),
    autoescape=select_autoescape(["html", "jinja"]),
    undefined=StrictUndefined,
)

# =============================================================================
# Dependency providers
# =============================================================================

def get_request_id(
    request: Request,
    x_request_id: Annotated[
        Optional[str],
        Header(description="Caller-supplied trace ID"),
    ] = None,
) -> str:
    """Prefer the Lambda request ID, then the caller's, then a fresh one."""
    aws_context = request.scope.get("aws.context")
    aws_request_id = getattr(aws_context, "aws_request_id", None)
    if aws_request_id:
        return aws_request_id
    if x_request_id and len(x_request_id) <= 128:
        return x_request_id
    return str(uuid.uuid4())


async def require_auth(
    request: Request,
    ctx: Annotated[RendererContext, Depends(get_context)],
    request_id: Annotated[str, Depends(get_request_id)],
) -> None:
    body = await request.body()
    allowed = validate_auth(
        ctx.config,
        method=request.method,
        query=request.query_params,
        headers=request.headers,
        body=body,
    )
    if not allowed:
        logger.warning("authentication_failed", extra={"request_id": request_id})
        raise AuthenticationError("Authentication required")


# =============================================================================
# GET /
# =============================================================================

@router.get(
    "/",
    summary="Interactive input form and status page",
    response_class=HTMLResponse,
    dependencies=[Depends(require_auth)],
)
async def input_form(
    ctx: Annotated[RendererContext, Depends(get_context)],
) -> HTMLResponse:
    await ctx.warmup.ensure_ready()

    html = _PAGES.get_template("input_form.html.jinja").render(
        built_at=ctx.config.BUILT_AT
        or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        runtime_version=f"python {platform.python_version()}",
        template_valid=ctx.catalog.default_template_exists(),
        libreoffice_ready=ctx.runtime.is_ready,
        templates=ctx.catalog.list_templates(),
        default_template=ctx.config.DEFAULT_TEMPLATE,
    )
    return HTMLResponse(content=html)


# =============================================================================
# POST /
# =============================================================================

@router.post(
    "/",
    summary="Render template data to PDF",
    response_class=Response,
    dependencies=[Depends(require_auth)],
    responses={
        200: {
            "content": {"application/pdf": {}},
            "description": "Rendered PDF document",
        },
        400: {"description": "Malformed request body"},
        401: {"description": "Authentication required"},
        404: {"description": "Unknown template"},
    },
)
async def render_pdf(
    request: Request,
    ctx: Annotated[RendererContext, Depends(get_context)],
    request_id: Annotated[str, Depends(get_request_id)],
) -> Response:
    start = time.monotonic()
    await ctx.warmup.ensure_ready()

    parsed = parse_request_body(
        request.method,
        request.headers.get("content-type", ""),
        await request.body(),
        request.query_params,
    )
    template_path = ctx.catalog.resolve(parsed.template_name)

    logger.info(
        "rendering_start",
        extra={
            "request_id": request_id,
            "default_used": parsed.default_used,
            "template": template_path.name,
        },
    )

    pdf = await ctx.converter.render_document(parsed.data, template_path)

    logger.info(
        "rendering_success",
        extra={
            "request_id": request_id,
            "duration_ms": int((time.monotonic() - start) * 1000),
            "size": len(pdf),
            "default_used": parsed.default_used,
        },
    )

    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": 'inline; filename="render.pdf"'},
    )


# =============================================================================
# GET /templates
# =============================================================================

@router.get(
    "/templates",
    summary="List available DOCX templates and their data markers",
    response_model=List[TemplateInfo],
    dependencies=[Depends(require_auth)],
)
def list_templates(
    ctx: Annotated[RendererContext, Depends(get_context)],
) -> List[TemplateInfo]:
    return ctx.catalog.list_templates()
