from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from typing import Any, Dict, List, Optional
import json
import logging
import asyncio
import re

from api.config import settings
from sources.base import CanonicalImage, SourceRule
from sources.cache import LoginState
from sources.errors import ErrorMapper, SourceError
from sources.manager import SourceManager
from sources.sites.pixiv import PixivSource
from pydantic import BaseModel

# Setup logging directory
settings.log_dir.mkdir(exist_ok=True)


# Custom formatter to strip ANSI color codes from file logs
class ColorStripFormatter(logging.Formatter):
    """Formatter that strips ANSI color codes from log messages."""
    ansi_escape = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')

    def format(self, record):
        message = super().format(record)
        return self.ansi_escape.sub('', message)


# Setup logging with color support for console, stripped for file
file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
file_handler.setFormatter(ColorStripFormatter(settings.log_format))

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(settings.log_format))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[file_handler, console_handler],
    force=True  # Override any existing configuration
)

# Per-rule engine loggers ("source.<rule_id>") write once, with their own handlers
source_logger = logging.getLogger('source')
source_logger.propagate = False
# Only add handlers if not already present (prevents duplicates on module reload)
if not source_logger.handlers:
    source_file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
    source_file_handler.setFormatter(ColorStripFormatter(settings.log_format))
    source_logger.addHandler(source_file_handler)

    source_console_handler = logging.StreamHandler()
    source_console_handler.setFormatter(logging.Formatter(settings.log_format))
    source_logger.addHandler(source_console_handler)
source_logger.setLevel(getattr(logging, settings.log_level.upper()))

logger = logging.getLogger(__name__)

error_mapper = ErrorMapper()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info("Prism Sources Backend Starting Up")
    logger.info("=" * 60)
    logger.info(f"Log file: {settings.log_file}")
    logger.info(f"Rules directory: {settings.rules_dir}")
    logger.info(f"CORS origins: {settings.cors_origins}")
    app.state.manager = SourceManager.from_settings(settings)
    logger.info(f"Loaded {len(app.state.manager.rules)} source rule(s)")
    logger.info("Backend ready to accept requests")

    yield  # Application runs here

    # Shutdown
    logger.info("=" * 60)
    logger.info("Prism Sources Backend Shutting Down")
    logger.info("=" * 60)

    try:
        await asyncio.wait_for(app.state.manager.close(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown cleanup timed out, forcing exit")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Prism Sources API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware - allow all origins for development
# Note: allow_credentials must be False when allow_origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    """Return empty response for favicon requests"""
    return Response(status_code=204)


def get_manager(request: Request) -> SourceManager:
    return request.app.state.manager


def get_rule_or_404(manager: SourceManager, rule_id: str) -> SourceRule:
    rule = manager.get_rule(rule_id)
    if rule is None:
        raise HTTPException(
            status_code=404,
            detail=f"Source '{rule_id}' not found. Available: {sorted(manager.rules)}"
        )
    return rule


def raise_mapped(error: SourceError, rule_id: str):
    """Log an engine error and convert it into an HTTPException."""
    mapped = error_mapper.map(error)
    logger.warning(f"[{rule_id}] {error.__class__.__name__}: {mapped.debug_message}")
    raise HTTPException(status_code=mapped.status_code, detail=mapped.user_message) from error


def parse_filters_param(filters: Optional[str]) -> Optional[Dict[str, Any]]:
    if filters is None:
        return None
    try:
        data = json.loads(filters)
    except ValueError:
        raise HTTPException(status_code=400, detail="filters must be a JSON object")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="filters must be a JSON object")
    return data


# Pydantic models for API responses
class SourceSummaryResponse(BaseModel):
    id: str
    name: str
    engine: str
    response_type: str
    pagination: str
    url: str
    filters: List[str]
    implemented: bool


class ImageResponse(BaseModel):
    id: str
    source_id: str
    thumb_url: str
    full_url: str
    width: int
    height: int
    aspect_ratio: float
    grade: Optional[str]
    tags: List[str]
    uploader: str
    views: str
    favorites: str
    file_size: str
    created_at: str
    mime_type: str
    is_ugoira: bool
    is_ai: bool
    headers: Dict[str, str]  # Headers to reuse when downloading the image


class ImagePageResponse(BaseModel):
    source: str
    page: int
    count: int
    images: List[ImageResponse]


class LoginStatusResponse(BaseModel):
    source: str
    logged_in: bool
    state: str


class SeedImage(BaseModel):
    """Image to find similar items for (as returned by the images endpoint)."""
    id: str
    thumb_url: str = ""
    full_url: str = ""
    tags: List[str] = []
    uploader: str = ""


class CookieUpdate(BaseModel):
    cookie: Optional[str] = None


def to_page(manager: SourceManager, rule: SourceRule, page: int,
            images: List[CanonicalImage]) -> ImagePageResponse:
    return ImagePageResponse(
        source=rule.id,
        page=page,
        count=len(images),
        images=[
            ImageResponse(**image.to_dict(), headers=manager.image_headers(image, rule))
            for image in images
        ],
    )


# API Endpoints

@app.get("/")
async def root():
    return {"message": "Prism Sources API", "version": "1.0.0"}


@app.get("/api/sources", response_model=List[SourceSummaryResponse])
async def list_sources(manager: SourceManager = Depends(get_manager)):
    """List every registered source rule"""
    return manager.list_rules()


@app.post("/api/sources", status_code=201)
async def add_source(rule: Dict[str, Any], manager: SourceManager = Depends(get_manager)):
    """Register (or replace) a rule from its JSON form"""
    try:
        added = manager.add_rule_json(json.dumps(rule))
    except SourceError as e:
        raise_mapped(e, str(rule.get('id', '?')))
    logger.info(f"Registered source '{added.id}' ({added.name})")
    return added.to_dict()


@app.get("/api/sources/{rule_id}")
async def get_source(rule_id: str, manager: SourceManager = Depends(get_manager)):
    """Get a rule in its JSON form"""
    return get_rule_or_404(manager, rule_id).to_dict()


@app.delete("/api/sources/{rule_id}")
async def delete_source(rule_id: str, manager: SourceManager = Depends(get_manager)):
    get_rule_or_404(manager, rule_id)
    manager.remove_rule(rule_id)
    return {"deleted": rule_id}


@app.get("/api/sources/{rule_id}/images", response_model=ImagePageResponse)
async def get_images(
    rule_id: str,
    page: int = Query(1, ge=1, description="1-based page number"),
    q: Optional[str] = Query(None, description="Search keyword"),
    filters: Optional[str] = Query(None, description="Filter selection as a JSON object"),
    manager: SourceManager = Depends(get_manager),
):
    """
    Fetch one page of images from a source.

    An empty `images` list means there are no more results. When `filters`
    is omitted the saved selection for the source is used.
    """
    rule = get_rule_or_404(manager, rule_id)
    selection = parse_filters_param(filters)
    try:
        images = await manager.fetch(rule, page=page, query=q, filters=selection)
    except SourceError as e:
        raise_mapped(e, rule_id)
    return to_page(manager, rule, page, images)


@app.put("/api/sources/{rule_id}/filters")
async def save_filters(rule_id: str, filters: Dict[str, Any],
                       manager: SourceManager = Depends(get_manager)):
    """Save the default filter selection for a source (empty object clears it)"""
    get_rule_or_404(manager, rule_id)
    manager.save_filters(rule_id, filters)
    return {"source": rule_id, "filters": manager.prefs.load_filters(rule_id)}


@app.post("/api/sources/{rule_id}/similar", response_model=ImagePageResponse)
async def get_similar(
    rule_id: str,
    seed: SeedImage,
    page: int = Query(1, ge=1),
    manager: SourceManager = Depends(get_manager),
):
    """Find images similar to a seed image from the same source"""
    rule = get_rule_or_404(manager, rule_id)
    seed_image = CanonicalImage(
        id=seed.id,
        source_id=rule.id,
        thumb_url=seed.thumb_url,
        full_url=seed.full_url or seed.thumb_url,
        tags=tuple(seed.tags),
        uploader=seed.uploader,
    )
    try:
        images = await manager.similar(rule, seed_image, page=page)
    except SourceError as e:
        raise_mapped(e, rule_id)
    return to_page(manager, rule, page, images)


@app.get("/api/sources/{rule_id}/login", response_model=LoginStatusResponse)
async def get_login_status(rule_id: str, manager: SourceManager = Depends(get_manager)):
    """Check whether the stored session for a source is logged in"""
    rule = get_rule_or_404(manager, rule_id)
    try:
        logged_in = await manager.check_login(rule)
    except SourceError as e:
        raise_mapped(e, rule_id)

    engine = manager.get_engine(rule)
    if isinstance(engine, PixivSource):
        state = engine.login_state.value
    else:
        state = LoginState.LOGGED_IN.value if logged_in else LoginState.LOGGED_OUT.value
    return LoginStatusResponse(source=rule_id, logged_in=logged_in, state=state)


@app.put("/api/sources/{rule_id}/cookie")
async def set_cookie(rule_id: str, update: CookieUpdate,
                     manager: SourceManager = Depends(get_manager)):
    """Store (or clear, with an empty cookie) the session cookie for a source"""
    get_rule_or_404(manager, rule_id)
    manager.set_cookie(rule_id, update.cookie)
    return {"source": rule_id, "has_cookie": manager.prefs.load_cookie(rule_id) is not None}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        access_log=True,
        log_config=None,
        timeout_keep_alive=5,
        timeout_graceful_shutdown=5.0,
    )
