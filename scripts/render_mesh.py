#!/usr/bin/env python3
"""
Mesh Renderer

Renders a PLY or OBJ mesh from one or more viewpoints with the software
rasterizer and saves the color images, depth images and a metrics report.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import yaml
from tqdm import tqdm

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from meshrender import evaluate, geometry, io, visualise
from meshrender.camera import CameraPinholeBrown, create_intrinsic
from meshrender.mesh import VertexMesh
from meshrender.render import RenderMesh


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("render")


def load_config(config_path: Optional[str] = None) -> Dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file, the repository's config.yaml if None

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"

    with open(config_path, "r") as f:
        config = yaml.safe_load(f)

    return config


def build_renderer(config: Dict) -> RenderMesh:
    """Creates a renderer configured from the camera and render sections."""
    camera_cfg = config["camera"]
    render_cfg = config.get("render", {})

    model = CameraPinholeBrown(
        radial=list(camera_cfg.get("radial") or []),
        t1=float(camera_cfg.get("t1", 0.0)),
        t2=float(camera_cfg.get("t2", 0.0)),
    )
    create_intrinsic(
        int(camera_cfg["width"]),
        int(camera_cfg["height"]),
        float(camera_cfg["hfov"]),
        float(camera_cfg.get("vfov", -1.0)),
        model,
    )

    renderer = RenderMesh()
    renderer.set_camera_model(model)
    renderer.default_color_rgb = int(render_cfg.get("background_color", 0xFFFFFF))
    surface_color = int(render_cfg.get("surface_color", 0xFF0000))
    renderer.surface_color = lambda face: surface_color
    renderer.check_face_normal = bool(render_cfg.get("check_face_normal", False))
    renderer.force_colorizer = bool(render_cfg.get("force_colorizer", False))

    logger.info(
        f"Camera {model.width}x{model.height}, fx={model.fx:.1f}, fy={model.fy:.1f}, "
        f"distorted={model.is_distorted()}"
    )
    return renderer


def mesh_bounds(mesh: VertexMesh) -> Tuple[np.ndarray, float]:
    """Center of the mesh's bounding box and the distance to its farthest vertex."""
    vertexes = mesh.vertexes.to_array()
    if vertexes.shape[0] == 0:
        raise ValueError("Mesh has no vertexes")
    center = 0.5 * (vertexes.min(axis=0) + vertexes.max(axis=0))
    radius = float(np.max(np.linalg.norm(vertexes - center, axis=1)))
    return center, radius if radius > 0 else 1.0


def create_views(
    mesh: VertexMesh,
    config: Dict,
    n_views: Optional[int] = None,
    eye: Optional[Sequence[float]] = None,
) -> List[geometry.Se3]:
    """World to view transforms for every view that will be rendered."""
    center, radius = mesh_bounds(mesh)
    if eye is not None:
        return [geometry.look_at(eye, center)]

    orbit_cfg = config.get("orbit", {})
    if n_views is None:
        n_views = int(orbit_cfg.get("views", 8))
    distance = radius * float(orbit_cfg.get("distance_scale", 2.5))
    return geometry.orbit_poses(center, distance, n_views, float(orbit_cfg.get("elevation", 20.0)))


def run_render(
    mesh_path: str,
    output_dir: str,
    n_views: Optional[int] = None,
    eye: Optional[Sequence[float]] = None,
    save_summary: Optional[bool] = None,
    config_path: Optional[str] = None,
    config: Optional[Dict] = None,
) -> Dict:
    """Renders a mesh and writes the results.

    Args:
        mesh_path: PLY or OBJ file
        output_dir: Directory the images and report are written to
        n_views: Number of orbit views, from the config if None
        eye: If provided a single view is rendered from this location looking at the mesh
        save_summary: Save matplotlib summaries, from the config if None
        config_path: Path to the configuration file
        config: Configuration dictionary, used instead of loading config_path

    Returns:
        Metrics dictionary
    """
    if config is None:
        config = load_config(config_path)
    output_cfg = config.get("output", {})
    if save_summary is None:
        save_summary = bool(output_cfg.get("save_summary", True))
    save_depth = bool(output_cfg.get("save_depth", True))

    os.makedirs(output_dir, exist_ok=True)
    metrics = evaluate.RenderMetrics()
    run_timer = evaluate.Timer("Render run")
    run_timer.start()

    # === Stage 1: Load mesh and texture ===
    with evaluate.Timer("Load Mesh") as timer:
        mesh = io.load_mesh(mesh_path)
        texture = io.load_texture(mesh_path, mesh)
        metrics.update_stage_timing("load_mesh", timer.elapsed)
    metrics.update("n_faces", mesh.size())
    metrics.update("n_vertexes", mesh.vertexes.size())

    # === Stage 2: Configure renderer and views ===
    renderer = build_renderer(config)
    if texture is not None:
        renderer.set_texture_image(texture)
    metrics.update("resolution", [renderer.resolution.width, renderer.resolution.height])
    poses = create_views(mesh, config, n_views, eye)
    logger.info(f"Rendering {len(poses)} views of {Path(mesh_path).name}")

    # === Stage 3: Render ===
    with evaluate.Timer("Render") as timer:
        for i, pose in enumerate(tqdm(poses, desc="Rendering views")):
            name = f"view_{i:03d}"
            renderer.world_to_view.set_to(pose)

            view_timer = evaluate.Timer(name)
            with view_timer:
                renderer.render(mesh)
            view = metrics.add_view(name, renderer.faces_rendered, renderer.depth_image, view_timer.elapsed)
            view["world_to_view"] = pose.to_matrix().tolist()

            visualise.save_color_image(renderer.rgb_image, os.path.join(output_dir, f"{name}.png"))
            if save_depth:
                np.save(os.path.join(output_dir, f"{name}_depth.npy"), renderer.depth_image)
            if save_summary:
                visualise.save_render_summary(
                    renderer.rgb_image,
                    renderer.depth_image,
                    os.path.join(output_dir, f"{name}_summary.png"),
                    title=name,
                )
        metrics.update_stage_timing("render", timer.elapsed)

    # === Stage 4: Save report ===
    metrics.update("runtime_s", run_timer.elapsed)
    metrics_dict = metrics.to_dict()
    metrics_dict["mesh"] = str(mesh_path)
    metrics_dict["datetime"] = datetime.datetime.now().isoformat()

    with open(os.path.join(output_dir, "report.json"), "w") as f:
        json.dump(metrics_dict, f, indent=2)

    logger.info("\n" + metrics.summary())
    return metrics_dict


def main():
    """Main function to parse arguments and render the mesh."""
    parser = argparse.ArgumentParser(description="Software Mesh Renderer")
    parser.add_argument(
        "--mesh", "-m", dest="mesh_path", required=True,
        help="Path to a PLY or OBJ mesh"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/render",
        help="Path to output directory"
    )
    parser.add_argument(
        "--views", "-n", dest="n_views", type=int, default=None,
        help="Number of views orbiting the mesh"
    )
    parser.add_argument(
        "--eye", dest="eye", type=float, nargs=3, default=None,
        metavar=("X", "Y", "Z"),
        help="Render a single view from this location looking at the mesh"
    )
    parser.add_argument(
        "--no-summary", dest="save_summary", action="store_false", default=None,
        help="Don't save matplotlib summaries"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--verbose", "-v", dest="verbose", action="store_true",
        help="Log debug messages"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        run_render(
            args.mesh_path,
            args.output_dir,
            args.n_views,
            args.eye,
            args.save_summary,
            args.config_path,
        )
    except Exception as e:
        logger.exception(f"Error rendering mesh: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
