# visualslam

Geometric building blocks for a feature-based visual SLAM pipeline, built on
NumPy.

## What is inside

- `visualslam.epnp` – the EPnP camera pose solver. `compute_pose(points_3d,
  points_2d, fx, fy, cx, cy)` returns a `PoseEstimate` with `rotation`,
  `translation` and the mean reprojection `error` in pixels. It needs at least
  four correspondences. Also `reprojection_error`, `qr_solve` (Householder
  least squares), `mat_to_quat` and `relative_error`.
- `visualslam.pnp` – `PnPSolver`, RANSAC over minimal EPnP samples followed by
  refinement on the inliers. It takes a list of `PnPCorrespondence` values
  (or `None` for keypoints without a map point). `find()` and
  `iterate(n_iterations)` return a `PnPResult` with a 4x4 float32 `pose` (or
  `None`), per-entry `inliers` flags, `n_inliers` and `no_more`.
- `visualslam.sim3` – `compute_sim3(points1, points2, fix_scale)` gives the
  closed-form similarity (`Sim3` with `rotation`, `translation`, `scale`,
  `matrix`, `inverse_matrix`, `apply`) that maps set 2 onto set 1.
  `Sim3Solver` runs RANSAC over `Sim3Correspondence` values and returns a
  `Sim3Result`. It checks inliers by reprojecting with the helpers `project`
  and `camera_to_image`.
- `visualslam.settings` – `load_settings(path)` reads a flat YAML settings
  file into a dictionary. A leading `%YAML:1.0` line and `!!opencv-matrix`
  nodes are accepted. `CameraSettings.from_mapping(data, sensor)` and
  `OrbSettings.from_mapping(data)` build typed settings from it. Keys that
  are missing read as zero. `Sensor` is `MONOCULAR`, `STEREO` or `RGBD`.
- `visualslam.image_input` – `to_grayscale(image, rgb)` and
  `scale_depth(depth, depth_map_factor)`. `select_close_points` picks the
  keypoints to create map points from depth. `count_close_points` counts
  tracked and untracked close points.
- `visualslam.trajectory` – `KeyFrameRecord` and `FrameRecord`, and the
  writers `save_trajectory_tum`, `save_keyframe_trajectory_tum` and
  `save_trajectory_kitti`. Each returns the number of lines written. Frames
  whose reference keyframe was culled are resolved through the spanning tree
  with `resolve_reference`.
- `visualslam.control` – `ModeRequests`, a thread-safe holder of
  localization-mode (`ModeChange`) and reset requests. The tracking thread
  takes each request once.
- `visualslam.viewer` – `ViewerSettings.from_mapping` reads display
  parameters. `ViewerControl` is the thread-safe stop/finish handshake of a
  viewer loop.

## What it does not do

The package has no feature extractor or matcher and no bundle adjustment. It
has no complete tracking, local mapping or loop closing loop, and no drawing
window. `ViewerControl` only carries the flags a display loop would check. No
command-line program is installed. You call the modules from your own code.

## Install

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np
from visualslam.epnp import compute_pose
from visualslam.sim3 import compute_sim3

points_3d = np.random.default_rng(0).uniform(-1, 1, (20, 3)) + [0, 0, 5]
points_2d = points_3d[:, :2] / points_3d[:, 2:] * 500 + [320, 240]
estimate = compute_pose(points_3d, points_2d, 500, 500, 320, 240)
print(estimate.rotation, estimate.translation, estimate.error)

sim3 = compute_sim3(2.0 * points_3d + [1, 0, 0], points_3d, fix_scale=False)
print(sim3.scale, sim3.translation)
```