"""
Spatial Index
Uniform lat/lng grid for nearest-within-radius lookups over POIs, terminals,
customers and raw trip endpoints. Cells are square in degrees; the number of
neighbouring cells scanned is derived from the query radius and latitude.
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from .geo import METERS_PER_DEGREE_LAT, MIN_METERS_PER_DEGREE_LAT, distance_m


@dataclass
class IndexedItem:
    key: Hashable
    lat: float
    lng: float
    radius_m: Optional[float] = None


class SpatialIndex:
    DEFAULT_CELL_SIZE_M = 500.0

    def __init__(self, cell_size_m: float = DEFAULT_CELL_SIZE_M,
                 distance_fn: Callable[[float, float, float, float], float] = distance_m):
        self.cell_size_m = cell_size_m
        self.distance_fn = distance_fn
        self.cell_deg = cell_size_m / METERS_PER_DEGREE_LAT
        self.cells: Dict[Tuple[int, int], List[Hashable]] = defaultdict(list)
        self.items: Dict[Hashable, IndexedItem] = {}
        self.max_radius_m = 0.0

    def __len__(self):
        return len(self.items)

    def __contains__(self, key):
        return key in self.items

    def _cell(self, lat: float, lng: float) -> Tuple[int, int]:
        return (int(math.floor((lat + 90) / self.cell_deg)),
                int(math.floor((lng + 180) / self.cell_deg)))

    def insert(self, key: Hashable, lat: float, lng: float, radius_m: Optional[float] = None):
        if key in self.items:
            self.remove(key)
        self.items[key] = IndexedItem(key, lat, lng, radius_m)
        self.cells[self._cell(lat, lng)].append(key)
        if radius_m is not None and radius_m > self.max_radius_m:
            self.max_radius_m = radius_m

    def remove(self, key: Hashable):
        item = self.items.pop(key, None)
        if item is None:
            return
        cell = self._cell(item.lat, item.lng)
        bucket = self.cells.get(cell)
        if bucket and key in bucket:
            bucket.remove(key)
            if not bucket:
                del self.cells[cell]

    def _candidate_keys(self, lat: float, lng: float, radius_m: float) -> List[Hashable]:
        lat_ring = int(math.ceil(radius_m / (self.cell_deg * MIN_METERS_PER_DEGREE_LAT)))
        poleward = min(abs(lat) + lat_ring * self.cell_deg, 89.9)
        cos_lat = max(math.cos(math.radians(poleward)), 0.01)
        lng_ring = int(math.ceil(radius_m / (self.cell_deg * METERS_PER_DEGREE_LAT * cos_lat)))

        cx, cy = self._cell(lat, lng)
        if (2 * lat_ring + 1) * (2 * lng_ring + 1) > len(self.cells):
            # window wider than the occupied cells: scan those instead
            return [key for (x, y), bucket in self.cells.items()
                    if abs(x - cx) <= lat_ring and abs(y - cy) <= lng_ring
                    for key in bucket]

        keys = []
        for dx in range(-lat_ring, lat_ring + 1):
            for dy in range(-lng_ring, lng_ring + 1):
                keys.extend(self.cells.get((cx + dx, cy + dy), ()))
        return keys

    def count_near(self, lat: float, lng: float, radius_m: float) -> int:
        """Items in the cells covering radius_m of the point; an upper bound on within()."""
        return len(self._candidate_keys(lat, lng, radius_m))

    def within(self, lat: float, lng: float, radius_m: float) -> List[Tuple[Hashable, float]]:
        """All items within radius_m of the point, nearest first (ties by key)."""
        found = []
        for key in self._candidate_keys(lat, lng, radius_m):
            item = self.items[key]
            d = self.distance_fn(lat, lng, item.lat, item.lng)
            if d <= radius_m:
                found.append((key, d))
        found.sort(key=lambda kd: (kd[1], kd[0]))
        return found

    def containing(self, lat: float, lng: float) -> List[Tuple[Hashable, float]]:
        """Items whose own service radius contains the point, nearest first."""
        if self.max_radius_m <= 0:
            return []
        found = []
        for key in self._candidate_keys(lat, lng, self.max_radius_m):
            item = self.items[key]
            if item.radius_m is None:
                continue
            d = self.distance_fn(lat, lng, item.lat, item.lng)
            if d <= item.radius_m:
                found.append((key, d))
        found.sort(key=lambda kd: (kd[1], kd[0]))
        return found

    def nearest_within(self, lat: float, lng: float,
                       radius_m: Optional[float] = None) -> Optional[Tuple[Hashable, float]]:
        matches = self.within(lat, lng, radius_m) if radius_m is not None else self.containing(lat, lng)
        return matches[0] if matches else None

    def get_stats(self) -> Dict:
        return {
            'items': len(self.items),
            'cells_used': len([c for c in self.cells.values() if c]),
            'cell_size_m': self.cell_size_m,
            'max_radius_m': self.max_radius_m
        }
