"""
Terrain

- DEMSurface: gridded elevation with glacier/visibility masks, bilinear
  sampling and ray intersection
- fill_crevasses: surface through crevasse tops for georeferencing features
- viewshed: cells visible from the camera location
"""
from .dem import DEMSurface
from .filters import fill_crevasses
from .viewshed import viewshed

__all__ = ["DEMSurface", "fill_crevasses", "viewshed"]
