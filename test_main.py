"""Tests for the gapmeter HTTP API."""

import base64

import cv2
import numpy as np
from fastapi.testclient import TestClient

import main

client = TestClient(main.app)


def _png(width, height, rects):
    """White BGR image with black rectangles, PNG-encoded."""
    img = np.full((height, width, 3), 255, np.uint8)
    for x, y, w, h in rects:
        img[y:y + h, x:x + w] = 0
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


TWO_SQUARES = [(0, 0, 10, 10), (20, 0, 10, 10)]
SMALL_OBJECTS = {"min_object_size": "50", "max_gap_width": "50", "dpi": "300"}


def test_health():
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_config_endpoint_returns_defaults():
    r = client.get("/api/config")
    assert r.status_code == 200
    assert r.json() == main.DEFAULT_CONFIG.model_dump(by_alias=True)
    assert set(r.json()) == {"binarizationThreshold", "minObjectSize", "maxGapWidth", "dpi"}


def test_measure_upload_finds_gap():
    r = client.post(
        "/api/gap/measure",
        files={"image": ("parts.png", _png(40, 10, TWO_SQUARES), "image/png")},
        data=SMALL_OBJECTS,
    )
    assert r.status_code == 200
    body = r.json()
    assert len(body["objects"]) == 2
    assert body["gap"] == {"x": 10, "y": 0, "width": 10, "height": 10}
    assert body["gapWidth"] == 10
    assert abs(body["gapWidthMm"] - 10 * 25.4 / 300) < 1e-9
    assert body["image"] == {"width": 40, "height": 10}
    assert body["config"]["minObjectSize"] == 50
    assert body["summary"].startswith("Found gap between components")
    assert "debugImage" not in body


def test_measure_upload_with_default_config_filters_small_objects():
    r = client.post(
        "/api/gap/measure",
        files={"image": ("parts.png", _png(40, 10, TWO_SQUARES), "image/png")},
    )
    assert r.status_code == 200
    assert r.json()["objects"] == []
    assert r.json()["gap"] is None


def test_measure_undecodable_upload_returns_empty_result():
    r = client.post(
        "/api/gap/measure",
        files={"image": ("broken.png", b"not an image", "image/png")},
        data=SMALL_OBJECTS,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["objects"] == []
    assert body["gap"] is None and body["gapWidthMm"] is None
    assert body["image"] is None


def test_measure_rejects_invalid_override():
    r = client.post(
        "/api/gap/measure",
        files={"image": ("parts.png", _png(40, 10, TWO_SQUARES), "image/png")},
        data={"dpi": "0"},
    )
    assert r.status_code == 400
    assert "error" in r.json()


def test_measure_debug_image_is_binary_mask():
    r = client.post(
        "/api/gap/measure",
        files={"image": ("parts.png", _png(40, 10, TWO_SQUARES), "image/png")},
        data={**SMALL_OBJECTS, "debug": "true"},
    )
    assert r.status_code == 200
    raw = base64.b64decode(r.json()["debugImage"])
    mask = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_GRAYSCALE)
    assert mask.shape == (10, 40)
    assert set(np.unique(mask).tolist()) == {0, 255}
    assert mask[0, 0] == 0 and mask[0, 15] == 255


def _rgba(width, height, rects):
    img = np.full((height, width, 4), 255, np.uint8)
    for x, y, w, h in rects:
        img[y:y + h, x:x + w, :3] = 0
    return base64.b64encode(img.tobytes()).decode("ascii")


def test_measure_raw_buffer():
    r = client.post(
        "/api/gap/measure-raw",
        json={
            "width": 40,
            "height": 10,
            "pixels": _rgba(40, 10, TWO_SQUARES),
            "config": {"minObjectSize": 50, "maxGapWidth": 5},
        },
    )
    assert r.status_code == 200
    body = r.json()
    assert len(body["objects"]) == 2
    # 10 px gap > maxGapWidth
    assert body["gap"] is None
    assert body["config"]["maxGapWidth"] == 5


def test_measure_raw_buffer_size_mismatch():
    r = client.post(
        "/api/gap/measure-raw",
        json={"width": 41, "height": 10, "pixels": _rgba(40, 10, TWO_SQUARES)},
    )
    assert r.status_code == 400
    assert "expected" in r.json()["error"]


def test_measure_raw_buffer_invalid_base64():
    r = client.post(
        "/api/gap/measure-raw",
        json={"width": 1, "height": 1, "pixels": "@@@"},
    )
    assert r.status_code == 400
