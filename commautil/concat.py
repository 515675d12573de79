"""Merge per-segment logs and camera streams into single per-route files."""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List

from .config import get_cfg, path_setting
from .errors import ConcatError
from .ffmpeg_io import concat_copy_args, write_concat_manifest
from .route_catalog import RouteCatalog, format_size

CONCAT_KINDS: tuple[str, ...] = ("rlog", "qlog", "video")
CAMERA_FILES: tuple[str, ...] = ("dcamera.hevc", "ecamera.hevc", "fcamera.hevc", "qcamera.ts")


@dataclass
class ConcatResult:
    kind: str
    outputs: List[Path] = field(default_factory=list)
    segments_processed: int = 0
    skipped: List[str] = field(default_factory=list)


def _segment_label(segment: Path) -> str:
    return segment.name.rpartition("--")[2]


def _concat_logs(kind: str, segments: List[Path], output_dir: Path) -> ConcatResult:
    output = output_dir / kind
    result = ConcatResult(kind=kind, outputs=[output])
    with output.open("wb") as dest:
        for segment in segments:
            source = segment / kind
            if not source.is_file():
                continue
            result.segments_processed += 1
            if kind == "rlog":
                dest.write(f"=== Segment {_segment_label(segment)} ===\n".encode("utf-8"))
            with source.open("rb") as src:
                shutil.copyfileobj(src, dest)
            if kind == "rlog":
                dest.write(b"\n")
    print(
        f"[concat] {kind} completed ({result.segments_processed}/{len(segments)} segments)"
        f" [{format_size(output.stat().st_size)}]",
        flush=True,
    )
    return result


def _concat_video(route_id: str, segments: List[Path], output_dir: Path, work_dir: Path) -> ConcatResult:
    if shutil.which("ffmpeg") is None:
        raise ConcatError("ffmpeg not found. Cannot concatenate video files.")

    result = ConcatResult(kind="video")
    timeout = int(get_cfg().get("timeouts", {}).get("command", 300))
    for camera_file in CAMERA_FILES:
        camera = camera_file.split(".", 1)[0]
        output = output_dir / camera_file
        output.unlink(missing_ok=True)

        inputs = [segment / camera_file for segment in segments if (segment / camera_file).is_file()]
        if not inputs:
            print(f"[concat] no segments for {camera}, skipping", flush=True)
            result.skipped.append(camera)
            continue

        list_path = work_dir / f"{route_id}_{camera}_concat_list.txt"
        write_concat_manifest(list_path, inputs)
        print(f"[concat] concatenating {len(inputs)} {camera} segments", flush=True)
        try:
            subprocess.run(
                concat_copy_args(list_path, output),
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ConcatError("ffmpeg not found. Cannot concatenate video files.") from exc
        except subprocess.CalledProcessError as exc:
            tail = (exc.stderr or "").strip().splitlines()[-5:]
            raise ConcatError(
                f"Failed to concatenate {camera} videos ({exc.returncode}): " + " | ".join(tail)
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ConcatError(f"ffmpeg timed out concatenating {camera} videos") from exc
        finally:
            list_path.unlink(missing_ok=True)

        result.outputs.append(output)
        result.segments_processed += len(inputs)
    return result


def _remove_originals(kind: str, segments: List[Path]) -> int:
    names = list(CAMERA_FILES) if kind == "video" else [kind]
    removed = 0
    for segment in segments:
        for name in names:
            target = segment / name
            if target.is_file():
                target.unlink()
                removed += 1
    return removed


def concatenate(
    route_id: str,
    kind: str,
    output_dir: Path,
    *,
    catalog: RouteCatalog | None = None,
    work_dir: Path | None = None,
    keep_originals: bool = True,
    confirm: Callable[[str], bool] | None = None,
) -> ConcatResult:
    """Concatenate one file kind of ``route_id`` into ``output_dir``.

    Source files are only deleted when ``keep_originals`` is False and
    ``confirm`` approves the prompt.
    """

    if kind not in CONCAT_KINDS:
        raise ConcatError(f"Invalid concatenation type: {kind}")
    catalog = catalog or RouteCatalog()
    segments = catalog.segments(route_id)
    if not segments:
        raise ConcatError(f"No route segments found for route {route_id}.")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if kind == "video":
        work_dir = Path(work_dir) if work_dir is not None else path_setting("concat_dir")
        result = _concat_video(route_id, segments, output_dir, work_dir)
    else:
        result = _concat_logs(kind, segments, output_dir)

    if not keep_originals and confirm is not None and confirm("Remove original segment files?"):
        removed = _remove_originals(kind, segments)
        print(f"[concat] removed {removed} original {kind} files", flush=True)
    return result
