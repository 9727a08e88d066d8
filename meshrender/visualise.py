"""Visualization of rendered images.

Converts depth images into color maps and writes side by side summaries of
the color and depth output of the renderer.
"""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import matplotlib.pyplot as plt
import numpy as np

from .evaluate import depth_range

logger = logging.getLogger(__name__)


def colorize_depth(
    depth: np.ndarray,
    cmap: str = "viridis",
    limits: Optional[tuple] = None,
) -> np.ndarray:
    """Maps a depth image onto a color map. Pixels without depth are black.

    Args:
        depth: HxW depth image with NaN where there is no depth
        cmap: Name of a matplotlib color map
        limits: Optional (min, max) depth used for normalization

    Returns:
        HxWx3 uint8 RGB image
    """
    valid = ~np.isnan(depth)
    output = np.zeros(depth.shape + (3,), dtype=np.uint8)
    if not np.any(valid):
        return output

    if limits is None:
        limits = depth_range(depth)
    low, high = limits
    normalized = np.zeros(depth.shape, dtype=np.float64)
    if high > low:
        normalized[valid] = np.clip((depth[valid] - low) / (high - low), 0.0, 1.0)

    colors = plt.get_cmap(cmap)(normalized)[..., :3]
    output[valid] = (255.0 * colors[valid] + 0.5).astype(np.uint8)
    return output


def save_color_image(rgb: np.ndarray, output_path: str) -> None:
    """Writes an RGB image to disk."""
    if not cv2.imwrite(str(output_path), cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)):
        raise IOError(f"Failed to write image {output_path}")
    logger.debug(f"Saved image to {output_path}")


def save_render_summary(
    rgb: np.ndarray,
    depth: np.ndarray,
    output_path: str,
    title: Optional[str] = None,
    cmap: str = "viridis",
) -> None:
    """Saves a figure with the rendered color image beside its depth image.

    Args:
        rgb: HxWx3 RGB image
        depth: HxW depth image, NaN where there is no depth
        output_path: Where the figure is saved
        title: Optional figure title
        cmap: Color map for the depth image
    """
    fig, axs = plt.subplots(1, 2, figsize=(12, 5))

    axs[0].imshow(rgb)
    axs[0].set_title("Color")
    axs[0].axis("off")

    limits = depth_range(depth)
    masked = np.ma.masked_invalid(depth)
    colormap = plt.get_cmap(cmap).copy()
    colormap.set_bad(color="black")
    im = axs[1].imshow(masked, cmap=colormap)
    if limits is None:
        axs[1].set_title("Depth (empty)")
    else:
        axs[1].set_title(f"Depth (min: {limits[0]:.2f}, max: {limits[1]:.2f})")
        cbar = plt.colorbar(im, ax=axs[1], fraction=0.046, pad=0.04)
        cbar.set_label("Depth")
    axs[1].axis("off")

    if title:
        fig.suptitle(title)

    plt.tight_layout()
    plt.savefig(output_path, dpi=120, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Render summary saved to {output_path}")
