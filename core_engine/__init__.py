"""LineRT — Core Engine Package.

Configuration, lookup tables, molecular data, the Delaunay mesh with its
neighbour graph, line blends, ray-cell traversal and the image raytracer.
"""
