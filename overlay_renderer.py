"""
Overlay renderer: owns the glasses sprite and draws it onto a BGRA surface.

Textures load on a worker pool. Finished loads are queued and attached by the
render thread in process_pending(), so the scene is only ever touched from
one thread. A load replaces the current sprite only when it succeeds and is
still the most recent request.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import queue
import threading
import urllib.parse
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import cv2
import numpy as np
import requests

from pose_estimator import Pose
from tryon_config import TryOnConfig
from tryon_errors import TextureLoadError

logger = logging.getLogger(__name__)


def fetch_image_bytes(url: str, timeout: float = 10.0, max_bytes: int = 10 * 1024 * 1024) -> bytes:
    """Read raw image bytes from a data URI, an http(s) URL or a local path."""
    if not url:
        raise TextureLoadError(url or "", "empty image url")

    if url.startswith("data:"):
        header, sep, payload = url.partition(",")
        if not sep:
            raise TextureLoadError(url, "malformed data URI")
        if header.endswith(";base64"):
            try:
                data = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise TextureLoadError(url, "invalid base64 payload", cause=e) from e
        else:
            data = urllib.parse.unquote_to_bytes(payload)

    elif url.startswith(("http://", "https://")):
        try:
            with requests.get(url, timeout=timeout, stream=True) as r:
                r.raise_for_status()
                length = r.headers.get("Content-Length")
                if length is not None and length.isdigit() and int(length) > max_bytes:
                    raise TextureLoadError(url, f"image larger than {max_bytes} bytes")
                chunks, total = [], 0
                for chunk in r.iter_content(chunk_size=64 * 1024):
                    total += len(chunk)
                    if total > max_bytes:
                        raise TextureLoadError(url, f"image larger than {max_bytes} bytes")
                    chunks.append(chunk)
                data = b"".join(chunks)
        except requests.RequestException as e:
            raise TextureLoadError(url, "download failed", cause=e) from e

    else:
        path = url[len("file://"):] if url.startswith("file://") else url
        if not os.path.isfile(path):
            raise TextureLoadError(url, "file not found")
        if os.path.getsize(path) > max_bytes:
            raise TextureLoadError(url, f"image larger than {max_bytes} bytes")
        with open(path, "rb") as f:
            data = f.read()

    if len(data) > max_bytes:
        raise TextureLoadError(url, f"image larger than {max_bytes} bytes")
    if not data:
        raise TextureLoadError(url, "empty image")
    return data


def decode_texture(data: bytes, max_size: int = 512, url: str = "") -> np.ndarray:
    """Decode image bytes into a BGRA uint8 array no larger than max_size per side."""
    img = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_UNCHANGED)
    if img is None:
        raise TextureLoadError(url, "not a decodable image")

    if img.dtype == np.uint16:
        img = (img >> 8).astype(np.uint8)
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:
        a = np.full(img.shape[:2], 255, np.uint8)
        img = np.dstack([img, a])

    h, w = img.shape[:2]
    max_dim = max(h, w)
    if max_size and max_dim > max_size:
        scale = max_size / max_dim
        new_w = max(1, int(w * scale))
        new_h = max(1, int(h * scale))
        logger.debug("Texture resized %dx%d -> %dx%d", w, h, new_w, new_h)
        img = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return np.ascontiguousarray(img)


class Texture:
    """BGRA image handle. dispose() drops the pixel buffer."""

    def __init__(self, image: np.ndarray, source: str = ""):
        self.image = image
        self.source = source
        self.disposed = False

    @property
    def width(self):
        return self.image.shape[1] if self.image is not None else 0

    @property
    def height(self):
        return self.image.shape[0] if self.image is not None else 0

    def dispose(self):
        self.image = None
        self.disposed = True


class QuadGeometry:
    """Flat quad in overlay units. The size never changes; scale comes from the pose."""

    def __init__(self, width=2.0, height=1.0):
        self.width = float(width)
        self.height = float(height)
        self.disposed = False

    def dispose(self):
        self.disposed = True


class Sprite:
    def __init__(self, geometry: QuadGeometry, texture: Texture):
        self.geometry = geometry
        self.texture = texture
        self.pose: Optional[Pose] = None

    @property
    def disposed(self):
        return self.texture.disposed or self.geometry.disposed

    def apply_pose(self, pose: Optional[Pose]):
        self.pose = pose

    def dispose(self):
        self.geometry.dispose()
        self.texture.dispose()


class Scene:
    def __init__(self):
        self._children = []

    @property
    def children(self):
        return tuple(self._children)

    def add(self, node):
        if node not in self._children:
            self._children.append(node)

    def remove(self, node):
        if node in self._children:
            self._children.remove(node)

    def clear(self):
        self._children.clear()

    def __len__(self):
        return len(self._children)


class OverlayRenderer:
    def __init__(self, config: Optional[TryOnConfig] = None, loader_workers: int = 2):
        self.config = config or TryOnConfig()
        self.scene = Scene()
        self.sprite: Optional[Sprite] = None
        self.surface: Optional[np.ndarray] = None
        self.current_url: Optional[str] = None
        self.disposed = False

        self._executor = ThreadPoolExecutor(max_workers=loader_workers,
                                            thread_name_prefix="texture-loader")
        self._results = queue.Queue()
        self._lock = threading.Lock()
        self._generation = 0
        self._settled_generation = 0
        self._last_pose: Optional[Pose] = None

    @property
    def is_loading(self) -> bool:
        with self._lock:
            return self._generation != self._settled_generation

    def set_glasses_image(self, url: str) -> Future:
        """Start loading a new glasses image. The current sprite stays until it succeeds."""
        if self.disposed:
            raise RuntimeError("renderer disposed")
        with self._lock:
            self._generation += 1
            gen = self._generation
        logger.info("Loading glasses image (request %d)", gen)
        return self._executor.submit(self._load, gen, url)

    def _load(self, gen, url):
        try:
            data = fetch_image_bytes(url, self.config.texture_timeout,
                                     self.config.max_texture_bytes)
            image = decode_texture(data, self.config.max_texture_size, url)
        except TextureLoadError as e:
            self._results.put((gen, url, None, e))
            return False
        except Exception as e:
            self._results.put((gen, url, None, TextureLoadError(url, "unexpected error", cause=e)))
            return False

        texture = Texture(image, url)
        with self._lock:
            if self.disposed:
                texture.dispose()
                return False
            self._results.put((gen, url, texture, None))
        return True

    def process_pending(self) -> bool:
        """Attach finished loads. Call from the render thread. Returns True if the sprite changed."""
        changed = False
        while True:
            try:
                gen, url, texture, error = self._results.get_nowait()
            except queue.Empty:
                break

            with self._lock:
                latest = self._generation
                if gen == latest:
                    self._settled_generation = gen

            if gen != latest:
                if texture is not None:
                    texture.dispose()
                logger.debug("Dropped stale texture load %d (latest %d)", gen, latest)
                continue

            if error is not None:
                logger.warning("Glasses swap abandoned, keeping current sprite: %s", error)
                continue

            self._attach(Sprite(QuadGeometry(self.config.quad_w, self.config.quad_h), texture), url)
            changed = True
        return changed

    def _attach(self, sprite: Sprite, url: str):
        old = self.sprite
        if old is not None:
            self.scene.remove(old)
            old.dispose()
        sprite.apply_pose(self._last_pose)
        self.scene.add(sprite)
        self.sprite = sprite
        self.current_url = url
        logger.info("Glasses sprite attached (%dx%d texture)", sprite.texture.width, sprite.texture.height)

    def apply_pose(self, pose: Optional[Pose]):
        self._last_pose = pose
        if self.sprite is not None:
            self.sprite.apply_pose(pose)

    def overlay_to_surface(self, x, y, width, height):
        ppu = self.config.pixels_per_unit
        return width / 2.0 + x * ppu, height / 2.0 - y * ppu

    def sprite_matrix(self, sprite: Sprite, width: int, height: int) -> np.ndarray:
        """2x3 affine from texture pixels to surface pixels."""
        tex_w, tex_h = sprite.texture.width, sprite.texture.height
        qw, qh = sprite.geometry.width, sprite.geometry.height
        pose = sprite.pose
        ppu = self.config.pixels_per_unit

        # texture pixels -> quad units, centered, y up
        to_quad = np.array([[qw / tex_w, 0.0, -qw / 2.0],
                            [0.0, -qh / tex_h, qh / 2.0],
                            [0.0, 0.0, 1.0]])
        c, s = np.cos(pose.rotation), np.sin(pose.rotation)
        k = pose.scale
        to_world = np.array([[k * c, -k * s, pose.x],
                             [k * s, k * c, pose.y],
                             [0.0, 0.0, 1.0]])
        to_surface = np.array([[ppu, 0.0, width / 2.0],
                               [0.0, -ppu, height / 2.0],
                               [0.0, 0.0, 1.0]])
        return (to_surface @ to_world @ to_quad)[:2].astype(np.float32)

    def render(self, width: int, height: int) -> np.ndarray:
        """Draw the scene into a fresh BGRA surface of the given size."""
        if width <= 0 or height <= 0:
            raise ValueError(f"surface size must be positive, got {width}x{height}")

        sprite = self.sprite
        if sprite is None or sprite.pose is None or sprite.texture.image is None:
            surface = np.zeros((height, width, 4), np.uint8)
        else:
            M = self.sprite_matrix(sprite, width, height)
            surface = cv2.warpAffine(sprite.texture.image, M, (width, height),
                                     flags=cv2.INTER_LINEAR,
                                     borderMode=cv2.BORDER_CONSTANT,
                                     borderValue=(0, 0, 0, 0))
        self.surface = surface
        return surface

    def dispose(self):
        if self.disposed:
            return
        # loads that finish after this block see disposed and drop their texture
        with self._lock:
            self.disposed = True
            self._generation += 1
            while True:
                try:
                    _, _, texture, _ = self._results.get_nowait()
                except queue.Empty:
                    break
                if texture is not None:
                    texture.dispose()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self.sprite is not None:
            self.scene.remove(self.sprite)
            self.sprite.dispose()
            self.sprite = None
        self.scene.clear()
        self.surface = None
        logger.info("Overlay renderer disposed")
