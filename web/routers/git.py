"""Git smart-HTTP view of the registry index.

Clients that use the git protocol (``registry = "<base>/git/crates.io-index"``)
are served by ``git http-backend`` over the index checkout. Only
upload-pack (fetch/clone) is offered.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi import status as http_status
from starlette.concurrency import run_in_threadpool

from rustmirror.config import Settings
from rustmirror.registry.index import INDEX_DIR
from web.deps import get_app_settings

logger = logging.getLogger(__name__)

router = APIRouter()

AppSettings = Annotated[Settings, Depends(get_app_settings)]

_HEADER_END_RE = re.compile(rb"\r?\n\r?\n")


def parse_cgi_response(output: bytes) -> tuple[int, dict[str, str], bytes]:
    """Split CGI output into status, headers and body.

    Raises:
        ValueError: If the output has no header block.
    """
    match = _HEADER_END_RE.search(output)
    if match is None:
        raise ValueError("CGI response has no header terminator")
    status_code = http_status.HTTP_200_OK
    headers: dict[str, str] = {}
    for line in output[: match.start()].decode("latin-1").splitlines():
        name, _, value = line.partition(":")
        value = value.strip()
        if name.lower() == "status":
            status_code = int(value.split()[0])
        elif name:
            headers[name] = value
    return status_code, headers, output[match.end() :]


def _backend_env(settings: Settings, request: Request, path: str, body: bytes) -> dict[str, str]:
    env = {
        "GIT_PROJECT_ROOT": str(settings.mirror_path.resolve()),
        "GIT_HTTP_EXPORT_ALL": "1",
        "PATH_INFO": f"/{INDEX_DIR}/{path}",
        "REQUEST_METHOD": request.method,
        "QUERY_STRING": request.url.query,
        "CONTENT_TYPE": request.headers.get("content-type", ""),
        "CONTENT_LENGTH": str(len(body)),
        "REMOTE_ADDR": request.client.host if request.client else "",
    }
    for header in ("content-encoding", "git-protocol"):
        if header in request.headers:
            env["HTTP_" + header.upper().replace("-", "_")] = request.headers[header]
    return env


def _run_backend(env: dict[str, str], body: bytes) -> bytes:
    full_env = {**os.environ, **env, "GIT_TERMINAL_PROMPT": "0"}
    result = subprocess.run(
        ["git", "http-backend"],
        input=body,
        capture_output=True,
        env=full_env,
        check=False,
    )
    if result.returncode != 0:
        logger.error("git http-backend failed: %s", result.stderr.decode(errors="replace"))
    return result.stdout


@router.api_route(f"/git/{INDEX_DIR}/{{path:path}}", methods=["GET", "POST"])
async def git_index(request: Request, path: str, settings: AppSettings) -> Response:
    """Proxy a smart-HTTP request to ``git http-backend``."""
    if "receive-pack" in path or "receive-pack" in request.url.query:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND)
    if request.method == "POST" and path != "git-upload-pack":
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND)
    if not (settings.mirror_path / INDEX_DIR / ".git").is_dir():
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND)

    body = await request.body()
    env = _backend_env(settings, request, path, body)
    output = await run_in_threadpool(_run_backend, env, body)
    try:
        status_code, headers, content = parse_cgi_response(output)
    except ValueError:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY) from None
    return Response(content=content, status_code=status_code, headers=headers)
