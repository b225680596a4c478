"""
Patch tracker

Supersampled normalised cross-correlation of a template from image A inside a
search window of image B, reporting the displacement and the primary and
secondary correlation peaks.
"""
from .correlate import DEFAULT_EXCLUSION_RADIUS, match_point, match_points

__all__ = ["match_point", "match_points", "DEFAULT_EXCLUSION_RADIUS"]
