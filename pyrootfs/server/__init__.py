import base64
import logging
import os
from pathlib import Path
from typing import Annotated

import httpx
from fastapi import Depends, FastAPI, Header, Query
from fastapi.responses import JSONResponse

import pyrootfs.oci
from pyrootfs.oci import BlobStore, Client, InspectSummary, Platform
from pyrootfs.oci.errors import (
    AuthError,
    InvalidReference,
    NoMatchingPlatform,
    NotFound,
    PyRootFSError,
)
from pyrootfs.settings import Credentials, Settings, default_cache_dir

app = FastAPI()
logger = logging.getLogger(__name__)

STATUS_CODES = {
    InvalidReference: 400,
    AuthError: 401,
    NotFound: 404,
    NoMatchingPlatform: 404,
}


def parse_auth_header(authorization: str) -> Credentials:
    """Parse the Authorization header into username and password."""
    username, _, password = (
        base64.b64decode(authorization.removeprefix("Basic ").encode("utf-8"))
        .decode("utf-8")
        .partition(":")
    )
    return Credentials(username=username, password=password)


def get_settings() -> Settings:
    cache_dir = os.environ.get("PYROOTFS_CACHE_DIR") or default_cache_dir()
    return Settings(cache_dir=Path(cache_dir))


def get_transport() -> httpx.AsyncBaseTransport | None:
    """Transport used to reach registries, `None` for the httpx default"""
    return None


def error_response(error: PyRootFSError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_CODES.get(type(error), 502),
        content={"detail": str(error), "stage": error.stage},
    )


@app.get("/inspect/{reference:path}", name="inspect", response_model=InspectSummary)
async def inspect_image(
    reference: str,
    settings: Annotated[Settings, Depends(get_settings)],
    transport: Annotated[httpx.AsyncBaseTransport | None, Depends(get_transport)],
    platform: Annotated[str | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
    pyrootfs_insecure: Annotated[bool, Header(alias="X-PyRootFS-Insecure")] = False,
):
    credentials = None
    if authorization is not None:
        credentials = parse_auth_header(authorization)
    if pyrootfs_insecure:
        settings = settings.model_copy(update={"insecure": True})

    try:
        image_reference = pyrootfs.oci.parse_reference(reference)
    except InvalidReference as e:
        return error_response(e)
    try:
        wanted = Platform.parse(platform) if platform else Platform.current()
    except ValueError as e:
        return JSONResponse(status_code=400, content={"detail": str(e)})

    logger.info("Inspecting '%s' for %s", image_reference, wanted)
    async with Client(
        image_reference.host,
        settings=settings,
        credentials=credentials,
        transport=transport,
    ) as client:
        try:
            return await pyrootfs.oci.inspect_image(
                image_reference, client, BlobStore(settings.cache_dir), wanted
            )
        except PyRootFSError as e:
            return error_response(e)
