"""Scan recorded drive segments and group them into routes.

Segments live in directories named ``<route_id>--<segment_index>`` under the
routes root.  Route details are cached in a JSON sidecar that is recomputed
once it is older than the configured TTL.
"""
from __future__ import annotations

import os
import shutil
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List

from .config import get_cfg, path_setting
from .errors import RouteNotFoundError
from .json_store import JsonStore

SEGMENT_SEPARATOR = "--"


def split_segment_name(name: str) -> tuple[str, int] | None:
    """Return ``(route_id, segment_index)`` for a segment directory name."""

    route_id, sep, index = name.rpartition(SEGMENT_SEPARATOR)
    if not sep or not route_id or not index.isdigit():
        return None
    return route_id, int(index)


def format_duration(seconds: int) -> str:
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


def format_size(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            if unit == "B":
                return f"{int(value)}{unit}"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}T"


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).lstat().st_size
            except OSError:
                continue
    return total


@dataclass
class RouteDetails:
    route: str
    timestamp: str
    duration: str
    duration_seconds: int
    segments: int
    size: str
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RouteDetails":
        return cls(
            route=str(payload["route"]),
            timestamp=str(payload.get("timestamp", "Unknown")),
            duration=str(payload.get("duration", "00:00:00")),
            duration_seconds=int(payload.get("duration_seconds", 0)),
            segments=int(payload.get("segments", 0)),
            size=str(payload.get("size", "0B")),
            size_bytes=int(payload.get("size_bytes", 0)),
        )


@dataclass
class RouteStats:
    routes: int
    segments: int
    size_bytes: int

    @property
    def size(self) -> str:
        return format_size(self.size_bytes)


class RouteList:
    """Restartable view of the route ids under a catalog; each iteration rescans."""

    def __init__(self, catalog: "RouteCatalog") -> None:
        self._catalog = catalog

    def __iter__(self) -> Iterator[str]:
        newest: Dict[str, float] = {}
        for segment_dir, route_id, _index in self._catalog.iter_segment_dirs():
            try:
                mtime = segment_dir.stat().st_mtime
            except OSError:
                continue
            if mtime > newest.get(route_id, float("-inf")):
                newest[route_id] = mtime
        ordered = sorted(newest.items(), key=lambda item: (item[1], item[0]), reverse=True)
        for route_id, _mtime in ordered:
            yield route_id


class RouteCatalog:
    def __init__(
        self,
        routes_dir: Path | None = None,
        cache_path: Path | None = None,
        *,
        ttl: float | None = None,
        segment_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        cfg = get_cfg()
        routes_cfg = cfg.get("routes", {})
        self.routes_dir = Path(routes_dir) if routes_dir is not None else path_setting("routes_dir", cfg)
        if cache_path is None:
            cache_path = path_setting("config_dir", cfg) / "route_cache.json"
        self.cache = JsonStore(Path(cache_path), default=[])
        self.ttl = float(ttl if ttl is not None else routes_cfg.get("cache_ttl_seconds", 300))
        self.segment_seconds = int(
            segment_seconds if segment_seconds is not None else routes_cfg.get("segment_seconds", 60)
        )
        self._clock = clock

    def iter_segment_dirs(self) -> Iterator[tuple[Path, str, int]]:
        try:
            entries = list(os.scandir(self.routes_dir))
        except FileNotFoundError:
            return
        for entry in entries:
            if not entry.is_dir(follow_symlinks=False):
                continue
            parsed = split_segment_name(entry.name)
            if parsed is None:
                continue
            yield Path(entry.path), parsed[0], parsed[1]

    def list_routes(self) -> RouteList:
        """Distinct route ids, newest first by segment directory mtime."""

        return RouteList(self)

    def segments(self, route_id: str) -> List[Path]:
        found = [
            (index, path)
            for path, candidate, index in self.iter_segment_dirs()
            if candidate == route_id
        ]
        found.sort()
        return [path for _index, path in found]

    def exists(self, route_id: str) -> bool:
        return bool(self.segments(route_id))

    def _compute_details(self, route_id: str, segments: List[Path]) -> RouteDetails:
        try:
            first_mtime = segments[0].stat().st_mtime
            timestamp = datetime.fromtimestamp(first_mtime).strftime("%Y-%m-%d %H:%M:%S")
        except OSError:
            timestamp = "Unknown"
        seconds = len(segments) * self.segment_seconds
        size_bytes = sum(directory_size(path) for path in segments)
        return RouteDetails(
            route=route_id,
            timestamp=timestamp,
            duration=format_duration(seconds),
            duration_seconds=seconds,
            segments=len(segments),
            size=format_size(size_bytes),
            size_bytes=size_bytes,
        )

    def scan(self) -> List[RouteDetails]:
        grouped: Dict[str, List[tuple[int, Path]]] = {}
        for path, route_id, index in self.iter_segment_dirs():
            grouped.setdefault(route_id, []).append((index, path))
        details = []
        for route_id in self.list_routes():
            ordered = [path for _index, path in sorted(grouped.get(route_id, []))]
            if ordered:
                details.append(self._compute_details(route_id, ordered))
        return details

    def cache_is_fresh(self) -> bool:
        try:
            age = self._clock() - self.cache.path.stat().st_mtime
        except OSError:
            return False
        return age < self.ttl

    def refresh_cache(self, *, force: bool = False) -> List[RouteDetails]:
        if not force and self.cache_is_fresh():
            payload = self.cache.load()
            if isinstance(payload, list):
                try:
                    return [RouteDetails.from_dict(entry) for entry in payload]
                except (KeyError, TypeError, ValueError):
                    pass
        details = self.scan()
        self.cache.save([entry.to_dict() for entry in details])
        return details

    def invalidate_cache(self) -> None:
        self.cache.delete()

    def get_route_details(self, route_id: str) -> RouteDetails:
        for entry in self.refresh_cache():
            if entry.route == route_id:
                return entry
        raise RouteNotFoundError(f"No route segments found for route {route_id}.")

    def stats(self) -> RouteStats:
        details = self.refresh_cache()
        return RouteStats(
            routes=len(details),
            segments=sum(entry.segments for entry in details),
            size_bytes=sum(entry.size_bytes for entry in details),
        )

    def remove_route(self, route_id: str) -> int:
        segments = self.segments(route_id)
        if not segments:
            raise RouteNotFoundError(f"No route segments found for route {route_id}.")
        for path in segments:
            shutil.rmtree(path)
        self.invalidate_cache()
        return len(segments)

    def remove_all_routes(self) -> int:
        removed = 0
        for path, _route_id, _index in list(self.iter_segment_dirs()):
            shutil.rmtree(path)
            removed += 1
        self.invalidate_cache()
        return removed

    def cleanup_route_files(self, days_old: float) -> List[Path]:
        """Delete segment directories last modified more than ``days_old`` days ago."""

        cutoff = self._clock() - days_old * 86400
        removed: List[Path] = []
        for path, _route_id, _index in list(self.iter_segment_dirs()):
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
            except OSError:
                continue
            shutil.rmtree(path)
            removed.append(path)
        if removed:
            self.invalidate_cache()
        return removed

    def manage_route_storage(
        self, *, max_bytes: int | None = None, days_old: float | None = None
    ) -> List[Path]:
        routes_cfg = get_cfg().get("routes", {})
        if max_bytes is None:
            max_bytes = int(float(routes_cfg.get("storage_limit_gb", 50)) * 1024 ** 3)
        if days_old is None:
            days_old = float(routes_cfg.get("storage_cleanup_days", 30))
        total = directory_size(self.routes_dir) if self.routes_dir.exists() else 0
        if total <= max_bytes:
            return []
        print(
            f"[routes] storage {format_size(total)} exceeds {format_size(max_bytes)};"
            f" removing segments older than {days_old:g} days",
            flush=True,
        )
        return self.cleanup_route_files(days_old)
