"""2D lidar SLAM: SE2 poses and scans, ICP, likelihood fields, occupancy grids, submaps, loop closing and mapping."""

__version__ = "0.1.0"

__all__ = [
    "frame",
    "graph",
    "lidar_2d_utils",
    "icp_2d",
    "likelihood_field",
    "multi_resolution",
    "occupancy_map",
    "submap",
    "loop_closing",
    "mapping_2d",
]