"""
Covering grid for radius searches.

The requested disc is tiled with a hexagonal lattice of circular cells.
Circles of radius r centred on a hex lattice with spacing r*sqrt(3)
cover the plane, and only lattice points within R + r of the centre can
own a hexagon that touches the requested disc. Spacing is shrunk slightly
so the flat-earth conversion never opens gaps at the seams.
"""

import math

from leadforge import config
from leadforge.errors import ValidationError
from leadforge.models import GridCell

KM_PER_DEG_LAT = 110.574
KM_PER_DEG_LNG_EQUATOR = 111.320
OVERLAP_FACTOR = 0.98


def _km_per_deg_lng(lat: float) -> float:
    # Clamp so cells near the poles don't divide by zero
    return KM_PER_DEG_LNG_EQUATOR * max(math.cos(math.radians(lat)), 0.01)


def offset(lat: float, lng: float, dx_km: float, dy_km: float) -> tuple[float, float]:
    """Shift a coordinate by east/north kilometres."""
    return (
        lat + dy_km / KM_PER_DEG_LAT,
        lng + dx_km / _km_per_deg_lng(lat),
    )


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Equirectangular distance, consistent with `offset`."""
    dx = (lng2 - lng1) * _km_per_deg_lng(lat1)
    dy = (lat2 - lat1) * KM_PER_DEG_LAT
    return math.hypot(dx, dy)


def generate_grid(
    lat: float,
    lng: float,
    radius_km: float,
    cell_km: float | None = None,
) -> list[GridCell]:
    """
    Cells whose union covers the circle (lat, lng, radius_km).

    The result is deterministic and ordered from the centre outward, so a
    run that is cut short by a cap has still covered the core area.
    """
    cell_km = cell_km if cell_km is not None else config.GRID_CELL_KM
    if radius_km <= 0:
        raise ValidationError("radius_km must be positive")
    if cell_km <= 0:
        raise ValidationError("cell_km must be positive")

    if radius_km <= cell_km:
        return [GridCell(lat=lat, lng=lng, radius_km=radius_km)]

    r = cell_km
    step_x = r * math.sqrt(3) * OVERLAP_FACTOR
    step_y = 1.5 * r * OVERLAP_FACTOR
    reach = radius_km + r

    rows = math.ceil(reach / step_y)
    cols = math.ceil(reach / step_x) + 1

    points = []
    for j in range(-rows, rows + 1):
        shift = step_x / 2 if j % 2 else 0.0
        y = j * step_y
        for i in range(-cols, cols + 1):
            x = i * step_x + shift
            d = math.hypot(x, y)
            if d <= reach + 1e-9:
                points.append((round(d, 9), j, i, x, y))

    points.sort(key=lambda p: (p[0], p[1], p[2]))

    cells = []
    for _, _, _, x, y in points:
        c_lat, c_lng = offset(lat, lng, x, y)
        cells.append(GridCell(lat=round(c_lat, 6), lng=round(c_lng, 6), radius_km=r))
    return cells


def estimate_cells(lat: float, lng: float, radius_km: float, cell_km: float | None = None) -> int:
    return len(generate_grid(lat, lng, radius_km, cell_km))
