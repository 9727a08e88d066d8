"""Software rendering of polygon meshes.

A small library which stores meshes and point clouds in packed numpy arrays,
reads and writes them as PLY and OBJ files, and rasterizes meshes into color
and depth images for pinhole cameras with optional lens distortion.
"""

from __future__ import annotations

__version__ = "0.1.0"
