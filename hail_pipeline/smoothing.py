#!/usr/bin/env python3
"""
Hail Grid Smoothing
Gaussian blur with a clipped kernel: samples outside the grid are skipped
and each cell is renormalized by the in-bounds kernel weight
"""

import logging
import math
from typing import Optional

import numpy as np
from scipy import ndimage

from .grid_align import HailGrid

logger = logging.getLogger(__name__)


def gaussian_kernel(sigma: float) -> np.ndarray:
    """
    Normalized 2-D Gaussian kernel of radius ceil(3*sigma)
    Shape is (2r+1, 2r+1) and the weights sum to 1
    """
    if not (sigma > 0 and math.isfinite(sigma)):
        raise ValueError(f"Kernel sigma must be positive, got {sigma}")

    radius = int(math.ceil(3 * sigma))
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    dy, dx = np.meshgrid(offsets, offsets, indexing='ij')
    kernel = np.exp(-(dx * dx + dy * dy) / (2 * sigma * sigma))
    return kernel / kernel.sum()


def smooth_values(values: np.ndarray, sigma: float) -> np.ndarray:
    """Clipped-kernel smoothing of a raw 2-D array"""
    if sigma <= 0 or values.size == 0:
        return values.astype(np.float64, copy=True)

    kernel = gaussian_kernel(sigma)
    data = np.nan_to_num(values.astype(np.float64), nan=0.0, posinf=0.0, neginf=0.0)

    # Zero padding plus division by the convolved in-bounds mask == clipped kernel
    weighted = ndimage.convolve(data, kernel, mode='constant', cval=0.0)
    coverage = ndimage.convolve(np.ones_like(data), kernel, mode='constant', cval=0.0)

    smoothed = np.divide(weighted, coverage, out=np.zeros_like(data), where=coverage > 0)
    return np.clip(smoothed, 0.0, None)


def smooth_grid(grid: HailGrid, sigma: Optional[float] = None) -> HailGrid:
    """
    Smooth a hail grid, returning a new grid with the same lattice
    sigma <= 0 (or None) gives an unmodified copy
    """
    if sigma is None or sigma <= 0:
        return grid.copy_with(grid.values.copy())

    before = grid.max_value
    smoothed = grid.copy_with(smooth_values(grid.values, sigma))
    after = smoothed.max_value

    if before > 0:
        logger.info(f"Smoothed grid (sigma={sigma}): peak {before:.2f}\" -> {after:.2f}\" "
                    f"({(1 - after / before) * 100:.0f}% peak loss)")
    return smoothed
