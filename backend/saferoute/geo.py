from __future__ import annotations

import math
from collections.abc import Sequence

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def grid_key(lat: float, lon: float, bucket_deg: float) -> tuple[int, int]:
    return (int(math.floor(lat / bucket_deg)), int(math.floor(lon / bucket_deg)))


def grid_ring_radius(radius_m: float, *, lat: float, bucket_deg: float) -> int:
    """Number of grid rings needed to cover ``radius_m`` around a point at ``lat``."""
    lat_cell_m = bucket_deg * (math.pi / 180.0) * EARTH_RADIUS_M
    # Longitude cells shrink towards the poles; clamp so the ring count stays finite.
    lon_cell_m = lat_cell_m * max(0.05, math.cos(math.radians(lat)))
    return int(math.ceil(max(0.0, radius_m) / min(lat_cell_m, lon_cell_m))) + 1


def _to_xy_m(lat: float, lon: float, ref_lat: float) -> tuple[float, float]:
    x = math.radians(lon) * EARTH_RADIUS_M * math.cos(math.radians(ref_lat))
    y = math.radians(lat) * EARTH_RADIUS_M
    return x, y


def point_to_segment_distance_m(
    *,
    lat: float,
    lon: float,
    seg_a: tuple[float, float],
    seg_b: tuple[float, float],
) -> float:
    ref_lat = (seg_a[0] + seg_b[0]) / 2.0
    px, py = _to_xy_m(lat, lon, ref_lat)
    ax, ay = _to_xy_m(seg_a[0], seg_a[1], ref_lat)
    bx, by = _to_xy_m(seg_b[0], seg_b[1], ref_lat)
    abx = bx - ax
    aby = by - ay
    apx = px - ax
    apy = py - ay
    denom = (abx * abx) + (aby * aby)
    if denom <= 1e-9:
        return math.hypot(px - ax, py - ay)
    t = max(0.0, min(1.0, ((apx * abx) + (apy * aby)) / denom))
    cx = ax + (t * abx)
    cy = ay + (t * aby)
    return math.hypot(px - cx, py - cy)


def nearest_segment(
    *,
    lat: float,
    lon: float,
    polyline: Sequence[tuple[float, float]],
) -> tuple[int, float]:
    """Return ``(segment_index, distance_m)`` of the polyline segment closest to the point."""
    if not polyline:
        return -1, float("inf")
    if len(polyline) == 1:
        return 0, haversine_m(lat, lon, polyline[0][0], polyline[0][1])
    best_idx = 0
    best_dist = float("inf")
    for idx in range(len(polyline) - 1):
        dist = point_to_segment_distance_m(lat=lat, lon=lon, seg_a=polyline[idx], seg_b=polyline[idx + 1])
        if dist < best_dist:
            best_idx = idx
            best_dist = dist
    return best_idx, best_dist
