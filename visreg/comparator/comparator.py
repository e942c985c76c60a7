"""Screenshot comparator — deterministic pixel diff with a threshold policy."""

from __future__ import annotations

import io
import logging

from PIL import Image, ImageChops, ImageOps, UnidentifiedImageError

from visreg.errors import ComparisonError
from visreg.models.test_result import ComparisonOutcome, Dimensions

logger = logging.getLogger(__name__)

# Largest per-channel difference (0-255) still treated as the same pixel.
# Absorbs anti-aliasing and font-hinting noise; fixed so runs stay reproducible.
PIXEL_TOLERANCE = 16

DIFF_COLOR = (255, 0, 0, 255)
GUTTER_COLOR = (128, 128, 128, 255)
GUTTER_WIDTH = 10


def _decode(data: bytes, label: str) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ComparisonError(f"Could not decode {label} image: {e}") from e


def _encode(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def _diff_mask(a: Image.Image, b: Image.Image) -> Image.Image:
    """Return an L-mode mask: 255 where the pixels differ beyond tolerance.

    Distance is the maximum absolute channel difference, which is symmetric
    in its arguments.
    """
    bands = ImageChops.difference(a, b).split()
    distance = bands[0]
    for band in bands[1:]:
        distance = ImageChops.lighter(distance, band)
    return distance.point(lambda v: 255 if v > PIXEL_TOLERANCE else 0)


class ScreenshotComparator:
    """Compares a baseline and an actual screenshot (PNG bytes)."""

    def compare(self, baseline_image: bytes, actual_image: bytes, threshold: float) -> ComparisonOutcome:
        """Compare two images.

        ``threshold`` is the tolerated share of differing pixels in [0, 1].
        Images of different sizes never match.
        """
        if not 0.0 <= threshold <= 1.0:
            raise ComparisonError(f"Threshold must be within [0, 1], got {threshold}")

        baseline = _decode(baseline_image, "baseline")
        actual = _decode(actual_image, "actual")

        if baseline.size != actual.size:
            width, height = max(baseline.size, actual.size, key=lambda s: (s[0] * s[1], s))
            logger.debug("Dimension mismatch: baseline %dx%d vs actual %dx%d",
                         *baseline.size, *actual.size)
            return ComparisonOutcome(
                match=False,
                diff_pixels=width * height,
                diff_percentage=100.0,
                threshold=threshold,
                dimensions=Dimensions(width=width, height=height),
            )

        width, height = baseline.size
        total = width * height
        if total == 0:
            return ComparisonOutcome(
                match=True, diff_pixels=0, diff_percentage=0.0, threshold=threshold,
                dimensions=Dimensions(width=width, height=height),
            )

        diff_pixels = _diff_mask(baseline, actual).histogram()[255]
        diff_percentage = diff_pixels * 100.0 / total
        match = diff_percentage <= threshold * 100

        logger.debug("Pixel diff: %d/%d (%.4f%%, threshold %.2f%%) -> %s",
                     diff_pixels, total, diff_percentage, threshold * 100,
                     "match" if match else "mismatch")
        return ComparisonOutcome(
            match=match,
            diff_pixels=diff_pixels,
            diff_percentage=diff_percentage,
            threshold=threshold,
            dimensions=Dimensions(width=width, height=height),
        )

    def generate_diff_image(self, baseline_image: bytes, actual_image: bytes) -> bytes:
        """Render a PNG highlighting differences for operator inspection.

        Same-size images: differing pixels in red over a faded grayscale copy
        of the baseline. Different sizes: baseline and actual side by side.
        """
        baseline = _decode(baseline_image, "baseline")
        actual = _decode(actual_image, "actual")

        if baseline.size != actual.size:
            return _encode(self._side_by_side(baseline, actual))

        faded = ImageOps.grayscale(baseline).convert("RGBA")
        faded = Image.blend(faded, Image.new("RGBA", baseline.size, (255, 255, 255, 255)), 0.6)
        highlight = Image.new("RGBA", baseline.size, DIFF_COLOR)
        return _encode(Image.composite(highlight, faded, _diff_mask(baseline, actual)))

    @staticmethod
    def _side_by_side(baseline: Image.Image, actual: Image.Image) -> Image.Image:
        max_width = max(baseline.width, actual.width)
        max_height = max(baseline.height, actual.height)
        combined = Image.new("RGBA", (max_width * 2 + GUTTER_WIDTH, max_height), GUTTER_COLOR)
        combined.paste(baseline, (0, 0))
        combined.paste(actual, (max_width + GUTTER_WIDTH, 0))
        return combined
