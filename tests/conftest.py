"""Shared test fixtures for imsearch tests."""

import os

import numpy as np
import cv2
import pytest

from imsearch.config import SearchConfig
from imsearch.orb_extractor import OrbExtractor
from imsearch.store import DescriptorStore


def make_noise_image(seed, size=(240, 320)):
    """Smoothed random texture; dense in FAST corners and unique per seed."""
    rng = np.random.RandomState(seed)
    img = rng.randint(0, 255, size, dtype=np.uint8)
    return cv2.GaussianBlur(img, (3, 3), 0)


def make_shapes_image(seed, size=(240, 320)):
    """Random filled rectangles and circles on a gray background (BGR)."""
    rng = np.random.RandomState(seed)
    img = np.full(size + (3,), 128, dtype=np.uint8)
    for _ in range(25):
        color = tuple(int(c) for c in rng.randint(0, 255, 3))
        x, y = int(rng.randint(0, size[1])), int(rng.randint(0, size[0]))
        if rng.rand() < 0.5:
            w, h = int(rng.randint(10, 60)), int(rng.randint(10, 60))
            cv2.rectangle(img, (x, y), (x + w, y + h), color, -1)
        else:
            cv2.circle(img, (x, y), int(rng.randint(5, 30)), color, -1)
    return img


def write_image(path, image):
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    assert cv2.imwrite(str(path), image)
    return str(path)


@pytest.fixture
def noise_image():
    return make_noise_image(1)


@pytest.fixture
def other_noise_image():
    return make_noise_image(2)


@pytest.fixture
def shapes_image():
    return make_shapes_image(7)


@pytest.fixture
def blank_image():
    """Uniform image with no corners at all."""
    return np.full((200, 200), 180, dtype=np.uint8)


@pytest.fixture
def config(tmp_path):
    """Small, exhaustive configuration rooted in a temporary database."""
    return SearchConfig(
        db_path=str(tmp_path / "imsearch.db"),
        orb_nfeatures=300,
        flann_checks=0,
        batch_size=250,
    )


@pytest.fixture
def extractor(config):
    return OrbExtractor.from_config(config)


@pytest.fixture
def store(config):
    return DescriptorStore.open(config.db_path, descriptor_size=32)


@pytest.fixture
def random_descriptors():
    rng = np.random.RandomState(0)
    return rng.randint(0, 256, (600, 32)).astype(np.uint8)


@pytest.fixture
def image_dir(tmp_path):
    """Directory tree with three distinct PNG/JPG images and a stray file."""
    root = tmp_path / "images"
    paths = [
        write_image(root / "a.png", make_noise_image(11)),
        write_image(root / "nested" / "b.png", make_noise_image(12)),
        write_image(root / "nested" / "c.PNG", make_shapes_image(13)),
    ]
    (root / "notes.txt").write_text("not an image")
    return str(root), sorted(os.path.abspath(p) for p in paths)
