from .pcd_proc import sample_farthest_points
