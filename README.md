# slam2d

slam2d is a 2D lidar SLAM toolkit written in Python. It uses NumPy and SciPy. The package is a library with no command-line entry point. You feed it scans yourself and get back poses, grids and images as NumPy arrays.

## Modules

- **`slam2d.frame`**
  - `SE2` is an immutable planar transform with fields `x`, `y` and `theta`. It supports `*` for composing transforms or applying one to a point, and has `inverse`, `transform`, `log` and `exp`.
  - `Scan2d` is a single-echo scan. Its `valid_points()` method yields `(index, range, angle)` for every range inside `[range_min, range_max]`.
  - `Frame` holds a scan together with its ids and poses. `Frame.dump(path)` writes it to a plain-text file and `Frame.load(path)` reads that file back.
  - `normalize_angle` wraps an angle into `[-pi, pi)`.
- **`slam2d.graph`** is a small Levenberg-Marquardt optimiser, `LevenbergMarquardt`. It contains:
  - `VertexSE2` vertices;
  - `EdgeSE2LikelihoodField` unary edges and `EdgeSE2` relative-pose edges;
  - the `HuberKernel` and `CauchyKernel` robust kernels;
  - `get_pixel_value`, which does bilinear image lookup.
- **`slam2d.lidar_2d_utils`** provides `visualize_2d_scan`. It draws a scan's endpoints and its pose into an RGB `uint8` image. It creates a white image of `image_size` when `image` is `None`, and returns the image.
- **`slam2d.icp_2d`** provides `Icp2d`, with two Gauss-Newton scan-to-scan methods:
  - `align_gauss_newton` does point-to-point registration.
  - `align_gauss_newton_point2plane` does point-to-line registration and uses `fit_line_2d`.
  - Both return the estimated `SE2`, or `None` when fewer than 20 points correspond.
- **`slam2d.likelihood_field`** provides `LikelihoodField`, which builds a distance field from a target scan or from an occupancy grid. It aligns a source scan with one of two methods:
  - `align_gauss_newton` returns `SE2` or `None`.
  - `align_g2o` uses the graph optimiser and returns `SE2`.
- **`slam2d.multi_resolution`** provides `MRLikelihoodField`, a four-level coarse-to-fine matcher built from an occupancy grid. Its `align_g2o` returns `None` if any level lacks more than 100 inliers, or has an inlier ratio of 0.4 or less.
- **`slam2d.occupancy_map`** provides `OccupancyMap`, a 1000×1000 `uint8` grid at 20 pixels per metre. It has two fill methods, `GridMethod.MODEL_POINTS` (template filling) and `GridMethod.BRESENHAM` (ray filling).
- **`slam2d.submap`** provides `Submap`: keyframes together with their own occupancy grid and likelihood field.
- **`slam2d.loop_closing`** provides `LoopClosing`. It finds submaps near the current keyframe and validates matches with `MRLikelihoodField`. It then runs pose-graph optimisation over the submaps, dropping loops whose chi² is too large. `get_loops()` returns the accepted `LoopConstraint`s.
- **`slam2d.mapping_2d`** provides `Mapping2D`, the mapping pipeline.
  - `process_scan(scan)` matches each scan into the current submap, adds keyframes, and starts a new submap when points fall outside the current one or it exceeds 50 keyframes.
  - `show_global_map(max_size)` renders all submaps, their axes, the keyframe trajectory and loop edges into one RGB image.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install .[test]
```

## Usage

### Registering two scans

```python
import numpy as np
from slam2d.frame import SE2, Scan2d
from slam2d.icp_2d import Icp2d

target = Scan2d(
    angle_min=-np.pi,
    angle_max=np.pi,
    angle_increment=2 * np.pi / 720,
    range_min=0.1,
    range_max=30.0,
    ranges=[5.0] * 720,
)

icp = Icp2d()
icp.set_target(target)
icp.set_source(target)
pose = icp.align_gauss_newton(SE2())   # SE2, or None on failure
```

### Building a map

```python
from slam2d.mapping_2d import Mapping2D

mapping = Mapping2D(with_loop_closing=True)
for scan in scans:          # an iterable of Scan2d
    mapping.process_scan(scan)

image = mapping.show_global_map(2000)   # an H x W x 3 uint8 array
```

### Occupancy grids

```python
from slam2d.frame import Frame
from slam2d.occupancy_map import GridMethod, OccupancyMap

grid = OccupancyMap()
grid.add_lidar_frame(Frame(scan=target), GridMethod.BRESENHAM)
raw = grid.occupancy_grid                       # uint8, 127 = unknown
picture = grid.get_occupancy_grid_black_white() # RGB: black, white, grey
```

Grid values move one step per observation and stay between 117 and 137. A value below 127 means occupied and a value above 127 means free.

All images are NumPy arrays. That covers field images from `get_field_image()`, the black-and-white grid view and the global map. All of them are `uint8` with three channels.

## What it does not do

- It does not read scans from recorded log or bag files. You build `Scan2d` objects yourself.
- It does not open windows to display images.
- It does not write PNG files. Save the returned arrays with an image library of your choice.
- It has no command-line program. Everything is driven from Python code.
- It has no multi-echo scan type.

`LoopClosing` takes one optional input, `debug_path`. If you give it, each candidate match is appended to that text file.

## Running the tests

```
pytest
```