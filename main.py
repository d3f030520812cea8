"""
main.py – FastAPI application for the gapmeter service.

Measures the gap between two components in a photo or scan.
Uploads are decoded here; measure.py only ever sees RGB(A) pixel arrays
and returns bounding boxes plus the gap in pixels and mm.
"""

import os
import base64
import asyncio
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Optional

import cv2
import numpy as np
from fastapi import FastAPI, UploadFile, File, Form
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

import measure

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if os.environ.get("GAP_DEBUG", "false").lower() in ("true", "1", "yes") else logging.INFO,
    format="[%(asctime)s] %(name)s %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("gapmeter")

# ---------------------------------------------------------------------------
# Config from env
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = measure.ThresholdConfig(
    binarization_threshold=int(os.environ.get("GAP_BINARIZATION_THRESHOLD", str(measure.DEFAULT_BINARIZATION_THRESHOLD))),
    min_object_size=int(os.environ.get("GAP_MIN_OBJECT_SIZE", str(measure.DEFAULT_MIN_OBJECT_SIZE))),
    max_gap_width=int(os.environ.get("GAP_MAX_GAP_WIDTH", str(measure.DEFAULT_MAX_GAP_WIDTH))),
    dpi=int(os.environ.get("GAP_DPI", str(measure.DEFAULT_DPI))),
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting gapmeter service …")
    log.info("Default config: %s", DEFAULT_CONFIG.model_dump(by_alias=True))
    yield
    log.info("gapmeter shutdown.")


app = FastAPI(title="gapmeter", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _decode_image(image_bytes: bytes) -> Optional[np.ndarray]:
    """JPEG/PNG bytes → H×W×3 RGB array, or None if undecodable."""
    if not image_bytes:
        return None
    arr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        return None
    # OpenCV decodes to BGR
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)


def _config_with(**overrides) -> measure.ThresholdConfig:
    """DEFAULT_CONFIG with non-None overrides applied (validated)."""
    values = DEFAULT_CONFIG.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return measure.ThresholdConfig(**values)


def _build_response(
    result: measure.ProcessedResult,
    config: measure.ThresholdConfig,
    pixels: Optional[np.ndarray],
    debug: bool,
) -> dict:
    response = result.to_dict()
    response["gapAreaMm2"] = result.gap_area_mm2
    response["summary"] = result.summary()
    response["config"] = config.model_dump(by_alias=True)
    response["image"] = None
    if pixels is not None:
        response["image"] = {"width": int(pixels.shape[1]), "height": int(pixels.shape[0])}

    # Binarized mask, as the pipeline saw it
    if debug and pixels is not None and pixels.size > 0:
        binary = measure.binarize(measure.to_grayscale(pixels), config.binarization_threshold)
        ok, buf = cv2.imencode(".png", binary)
        if ok:
            response["debugImage"] = base64.b64encode(buf).decode("utf-8")

    return response


# ---------------------------------------------------------------------------
# API: Gap measurement
# ---------------------------------------------------------------------------

@app.post("/api/gap/measure")
async def api_gap_measure(
    image: UploadFile = File(...),
    binarization_threshold: Optional[int] = Form(None),
    min_object_size: Optional[int] = Form(None),
    max_gap_width: Optional[int] = Form(None),
    dpi: Optional[int] = Form(None),
    debug: bool = Form(False),
):
    """Upload photo → components + gap between them."""
    try:
        config = _config_with(
            binarization_threshold=binarization_threshold,
            min_object_size=min_object_size,
            max_gap_width=max_gap_width,
            dpi=dpi,
        )
    except ValidationError as e:
        log.warning("Rejected config override: %s", e)
        return JSONResponse({"error": str(e)}, status_code=400)

    image_bytes = await image.read()
    pixels = _decode_image(image_bytes)
    if pixels is None:
        log.warning("Could not decode upload %r (%d bytes)", image.filename, len(image_bytes))

    result = await asyncio.to_thread(measure.process_image, pixels, config)
    return _build_response(result, config, pixels, debug)


class RawImage(BaseModel):
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)
    channels: int = 4
    pixels: str  # base64, row-major RGB(A)
    config: Optional[measure.ThresholdConfig] = None
    debug: bool = False


@app.post("/api/gap/measure-raw")
async def api_gap_measure_raw(body: RawImage):
    """Already-decoded RGB(A) buffer → components + gap between them."""
    try:
        data = base64.b64decode(body.pixels, validate=True)
    except binascii.Error as e:
        return JSONResponse({"error": f"Invalid base64 pixel data: {e}"}, status_code=400)

    try:
        pixels = measure.pixels_from_buffer(data, body.width, body.height, body.channels)
    except measure.PixelBufferError as e:
        log.warning("Raw buffer rejected: %s", e)
        return JSONResponse({"error": str(e)}, status_code=400)

    config = body.config or DEFAULT_CONFIG
    result = await asyncio.to_thread(measure.process_image, pixels, config)
    return _build_response(result, config, pixels, body.debug)


# ---------------------------------------------------------------------------
# API: Config & Health
# ---------------------------------------------------------------------------

@app.get("/api/config")
async def api_config():
    return DEFAULT_CONFIG.model_dump(by_alias=True)


@app.get("/api/health")
async def api_health():
    return {"status": "ok"}
