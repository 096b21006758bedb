"""Mirror content routes.

Serves the instructions page and the mirrored tree read-only:

- /dist/... and /rustup/... for rustup (RUSTUP_DIST_SERVER / RUSTUP_UPDATE_ROOT)
- /index/... as a sparse registry view of the index checkout
- /crates/{name}/{version}/download as the registry ``dl`` endpoint
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi import status as http_status
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session, sessionmaker

from rustmirror import __version__
from rustmirror.config import Settings
from rustmirror.registry.archives import crate_path
from rustmirror.registry.index import INDEX_DIR, registry_config
from rustmirror.status import list_installers, mirror_status
from web.deps import get_app_settings, get_session_factory
from web.files import file_response, resolve_under

router = APIRouter()

templates = Jinja2Templates(directory=Path(__file__).resolve().parent.parent / "templates")

AppSettings = Annotated[Settings, Depends(get_app_settings)]
SessionFactory = Annotated[sessionmaker[Session], Depends(get_session_factory)]


def public_base_url(request: Request, settings: Settings) -> str:
    """Base URL clients should use: configured, else derived from the request."""
    if settings.base_url:
        return settings.base_url
    return str(request.base_url).rstrip("/")


@router.get("/", response_class=HTMLResponse, name="index")
def index(
    request: Request,
    settings: AppSettings,
    session_factory: SessionFactory,
) -> HTMLResponse:
    """Render the client setup instructions."""
    base_url = public_base_url(request, settings)
    info = mirror_status(settings, session_factory, limit=1)
    return templates.TemplateResponse(
        request=request,
        name="index.html",
        context={
            "version": __version__,
            "base_url": base_url,
            "rustup_enabled": settings.rustup_enabled,
            "crates_enabled": settings.crates_enabled,
            "installers": list_installers(settings.mirror_path),
            "last_run": info["runs"][0] if info["runs"] else None,
            "index": info["index"],
        },
    )


@router.api_route("/dist/{path:path}", methods=["GET", "HEAD"])
def dist_file(request: Request, path: str, settings: AppSettings) -> Response:
    """Channel manifests and toolchain components."""
    return file_response(request, resolve_under(settings.mirror_path / "dist", path))


@router.api_route("/rustup/{path:path}", methods=["GET", "HEAD"])
def rustup_file(request: Request, path: str, settings: AppSettings) -> Response:
    """rustup-init installers and release-stable.toml."""
    return file_response(request, resolve_under(settings.mirror_path / "rustup", path))


@router.get("/index/config.json")
def sparse_config(request: Request, settings: AppSettings) -> dict[str, str]:
    """Registry config for sparse clients, pointing downloads at this mirror."""
    if not (settings.mirror_path / INDEX_DIR).is_dir():
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND)
    return registry_config(public_base_url(request, settings))


@router.api_route("/index/{path:path}", methods=["GET", "HEAD"])
def index_file(request: Request, path: str, settings: AppSettings) -> Response:
    """Sparse registry files (config.json and per-crate index files)."""
    return file_response(request, resolve_under(settings.mirror_path / INDEX_DIR, path))


@router.api_route("/crates/{name}/{version}/download", methods=["GET", "HEAD"])
def crate_download(
    request: Request, name: str, version: str, settings: AppSettings
) -> Response:
    """Crate archive download, as addressed by cargo's default ``dl`` scheme."""
    return file_response(
        request, resolve_under(settings.mirror_path, crate_path(name, version))
    )
