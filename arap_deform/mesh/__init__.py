from .mesh_proc import validate_mesh, get_unique_edges, avg_edge_length, cotmatrix_entries, cotmatrix, massmatrix, group_sum_matrix, plane_project
from .mesh_loss import arap_loss
