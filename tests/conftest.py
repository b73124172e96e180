from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import numpy as np
import pytest

from zestellar.index_catalog import IndexCatalog
from zestellar.index_file import build_index_file
from zestellar.pixel_buffer import PixelBuffer
from zestellar.wcs_fit import TanTransform

SYNTH_CENTER = (150.0, -20.0)
SYNTH_SIZE = 600
SYNTH_SCALE_ARCSEC = 1.0
SYNTH_STAR_COUNT = 50
SYNTH_PSF_SIGMA = 1.5
SYNTH_BACKGROUND = 100.0
SYNTH_NOISE = 2.0
# Normal parity, north up, east left
SYNTH_TRANSFORM = TanTransform(
    crval=SYNTH_CENTER,
    crpix=((SYNTH_SIZE - 1) / 2.0, (SYNTH_SIZE - 1) / 2.0),
    cd=((-SYNTH_SCALE_ARCSEC / 3600.0, 0.0), (0.0, SYNTH_SCALE_ARCSEC / 3600.0)),
)


def _star_pixels(count: int, size: int, *, seed: int, margin: float = 25.0, min_sep: float = 24.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    points: list[np.ndarray] = []
    while len(points) < count:
        candidate = rng.uniform(margin, size - 1 - margin, size=2)
        if all(np.hypot(*(candidate - p)) >= min_sep for p in points):
            points.append(candidate)
    return np.array(points, dtype=np.float64)


def render_stars(
    pixels: np.ndarray,
    amplitudes: np.ndarray,
    *,
    size: int = SYNTH_SIZE,
    sigma: float = SYNTH_PSF_SIGMA,
    background: float = SYNTH_BACKGROUND,
    noise: float = SYNTH_NOISE,
    seed: int = 11,
) -> np.ndarray:
    """Gaussian point sources on a flat, noisy sky."""
    rng = np.random.default_rng(seed)
    image = np.full((size, size), background, dtype=np.float64)
    if noise > 0:
        image += rng.normal(0.0, noise, size=image.shape)
    radius = int(np.ceil(8 * sigma))
    for (x, y), amp in zip(pixels, amplitudes):
        x0, x1 = max(0, int(x) - radius), min(size, int(x) + radius + 1)
        y0, y1 = max(0, int(y) - radius), min(size, int(y) + radius + 1)
        yy, xx = np.mgrid[y0:y1, x0:x1]
        image[y0:y1, x0:x1] += amp * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2.0 * sigma * sigma))
    return image.astype(np.float32)


@pytest.fixture(scope="session")
def synthetic_field() -> dict[str, np.ndarray]:
    """Pixel positions, sky positions and magnitudes of the synthetic star field (brightest first)."""
    pixels = _star_pixels(SYNTH_STAR_COUNT, SYNTH_SIZE, seed=7)
    mags = np.linspace(8.0, 11.0, SYNTH_STAR_COUNT)
    radec = SYNTH_TRANSFORM.pixel_to_sky(pixels)
    amplitudes = 40000.0 * 10.0 ** (-0.4 * (mags - 8.0))
    return {"pixels": pixels, "radec": radec, "mags": mags, "amplitudes": amplitudes}


@pytest.fixture(scope="session")
def synthetic_image(synthetic_field) -> np.ndarray:
    return render_stars(synthetic_field["pixels"], synthetic_field["amplitudes"])


@pytest.fixture(scope="session")
def synthetic_buffer(synthetic_image) -> PixelBuffer:
    return PixelBuffer.from_array(synthetic_image)


@pytest.fixture(scope="session")
def mirrored_buffer(synthetic_image) -> PixelBuffer:
    return PixelBuffer.from_array(synthetic_image[:, ::-1])


@pytest.fixture(scope="session")
def synthetic_index_dir(tmp_path_factory, synthetic_field) -> Path:
    index_root = tmp_path_factory.mktemp("synthetic_index")
    radec = synthetic_field["radec"]
    build_index_file(
        radec[:, 0],
        radec[:, 1],
        synthetic_field["mags"],
        name="synth-60-600",
        min_arcsec=60.0,
        max_arcsec=600.0,
        output=index_root / "synth-60-600.npz",
    )
    return index_root


@pytest.fixture()
def synthetic_catalog(synthetic_index_dir) -> IndexCatalog:
    return IndexCatalog(paths=[synthetic_index_dir])
