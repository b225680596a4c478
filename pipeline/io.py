from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Iterable, List, Optional

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import Correspondence, PointVelocity
from terrain import DEMSurface

log = get_logger("pipeline.io")


def load_image(path: str) -> np.ndarray:
    """Grey float32 image."""
    img = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise FileNotFoundError(f"could not read image {path}")
    return img.astype(np.float32)


def load_gcps(path: str, pixel_origin: float = 0.0) -> List[Correspondence]:
    """
    Whitespace table with one GCP per row: x y z u v.
    `pixel_origin` is subtracted from u, v (1 for 1-based pixel tables).
    """
    t = np.loadtxt(path, ndmin=2)
    if t.shape[1] < 5:
        raise ValueError(f"{path}: expected columns x y z u v, got {t.shape[1]} columns")
    return Correspondence.from_arrays(t[:, 0:3], t[:, 3:5] - float(pixel_origin))


def load_dem(path: str, mask_path: Optional[str] = None) -> DEMSurface:
    if Path(path).suffix.lower() == ".npz":
        dem = DEMSurface.from_npz(path)
        if mask_path is not None:
            with np.load(mask_path) as m:
                dem = dem.replace(glaciated=m["mask"])
        return dem
    return DEMSurface.from_geotiff(path, mask_path=mask_path)


def load_photodates(path: str) -> np.ndarray:
    """CSV with `id` and `t` (days) columns -> (N,2) array sorted by id."""
    rows = []
    with open(path, "r", newline="") as f:
        for row in csv.DictReader(f):
            rows.append((float(row["id"]), float(row["t"])))
    if not rows:
        raise ValueError(f"{path}: no photo dates")
    table = np.array(rows, dtype=float)
    return table[np.argsort(table[:, 0])]


def acquisition_time(table: np.ndarray, image_id: float) -> float:
    """Acquisition time of an image, linearly interpolated between listed ids."""
    ids, t = table[:, 0], table[:, 1]
    if not ids[0] <= image_id <= ids[-1]:
        raise ValueError(f"image id {image_id} outside the photo-date table [{ids[0]}, {ids[-1]}]")
    return float(np.interp(image_id, ids, t))


def write_results(path: str, velocities: Iterable[PointVelocity], append: bool = False) -> int:
    """One JSON object per line; returns the number of rows written."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with p.open("a" if append else "w", buffering=1) as f:
        for v in velocities:
            f.write(json.dumps(v.to_dict()) + "\n")
            n += 1
    log.info("Results written", extra={"extra": {"path": str(p), "rows": n}})
    return n
