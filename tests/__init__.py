"""
Glacier velocity test suite

This package contains tests for the oblique-photo glacier velocity tracker.

Structure:
- unit/: Unit tests for the camera, terrain, tracking and pipeline packages
- integration/: Full pipeline runs on synthetic image pairs
- synthetic.py: Synthetic cameras, DEMs and image pairs shared by both
"""
