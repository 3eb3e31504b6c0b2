"""
geometry.py - PDF affine matrices.

PDF matrices ``[a b c d e f]`` are stored as 3x3 numpy arrays in row-vector
form, so a point transforms as ``[x y 1] @ M`` and ``cm`` concatenates as
``M @ CTM``.
"""

import math
from typing import Sequence, Tuple

import numpy as np

POINTS_PER_INCH = 72.0


def identity() -> np.ndarray:
    return np.eye(3, dtype=np.float64)


def from_operands(values: Sequence[float]) -> np.ndarray:
    a, b, c, d, e, f = (float(v) for v in values)
    return np.array([[a, b, 0.0], [c, d, 0.0], [e, f, 1.0]], dtype=np.float64)


def to_operands(matrix: np.ndarray) -> Tuple[float, float, float, float, float, float]:
    return (
        float(matrix[0, 0]), float(matrix[0, 1]),
        float(matrix[1, 0]), float(matrix[1, 1]),
        float(matrix[2, 0]), float(matrix[2, 1]),
    )


def is_identity(values: Sequence[float], tolerance: float = 1e-9) -> bool:
    return all(abs(float(v) - ref) <= tolerance for v, ref in zip(values, (1, 0, 0, 1, 0, 0)))


def translate(tx: float, ty: float) -> np.ndarray:
    return from_operands((1, 0, 0, 1, tx, ty))


def scale(sx: float, sy: float) -> np.ndarray:
    return from_operands((sx, 0, 0, sy, 0, 0))


def transform_points(points: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Transform an (N, 2) array of points."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    homogeneous = np.hstack([points, np.ones((len(points), 1))])
    return (homogeneous @ matrix)[:, :2]


def area_scale(matrix: np.ndarray) -> float:
    """Area of the unit square under the matrix (|det| of the linear part)."""
    return abs(matrix[0, 0] * matrix[1, 1] - matrix[0, 1] * matrix[1, 0])


def line_scale(matrix: np.ndarray) -> float:
    return math.sqrt(area_scale(matrix))


def effective_dpi(pixel_width: int, pixel_height: int, matrix: np.ndarray) -> float:
    """Pixel density of an image drawn into the unit square mapped by ``matrix``.

    Returns 0.0 for degenerate placements.
    """
    area = area_scale(matrix)
    if area <= 0 or pixel_width <= 0 or pixel_height <= 0:
        return 0.0
    square_inches = area / (POINTS_PER_INCH * POINTS_PER_INCH)
    return math.sqrt(pixel_width * pixel_height / square_inches)


def page_transform(box: Sequence[float], rotate: int, zoom: float) -> Tuple[np.ndarray, int, int]:
    """Matrix from page space to device pixels (top-left origin) plus the output size.

    ``box`` is ``[x0 y0 x1 y1]`` and ``rotate`` a multiple of 90 degrees, applied
    clockwise as viewers do.
    """
    x0, y0, x1, y1 = (float(v) for v in box)
    x0, x1 = min(x0, x1), max(x0, x1)
    y0, y1 = min(y0, y1), max(y0, y1)
    width, height = x1 - x0, y1 - y0
    rotate = rotate % 360

    # Move the box to the origin and flip y so row 0 is the top edge
    matrix = translate(-x0, -y0) @ from_operands((1, 0, 0, -1, 0, height))
    if rotate == 90:
        matrix = matrix @ from_operands((0, 1, -1, 0, height, 0))
        width, height = height, width
    elif rotate == 180:
        matrix = matrix @ from_operands((-1, 0, 0, -1, width, height))
    elif rotate == 270:
        matrix = matrix @ from_operands((0, -1, 1, 0, 0, width))
        width, height = height, width
    matrix = matrix @ scale(zoom, zoom)
    return matrix, int(math.ceil(width * zoom - 1e-6)), int(math.ceil(height * zoom - 1e-6))
