"""Shared helpers for building ffmpeg concat command lines."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable


def _quote_concat_path(path: Path) -> str:
    # The concat demuxer escapes a single quote as '\''
    return str(path).replace("'", "'\\''")


def write_concat_manifest(list_path: Path, inputs: Iterable[Path]) -> int:
    """Write a concat-demuxer manifest and return the number of entries."""

    count = 0
    list_path.parent.mkdir(parents=True, exist_ok=True)
    with list_path.open("w", encoding="utf-8") as handle:
        for path in inputs:
            handle.write(f"file '{_quote_concat_path(path)}'\n")
            count += 1
    return count


def concat_copy_args(list_path: Path, output: Path) -> list[str]:
    """Return an ffmpeg command that stream-copies a concat manifest into ``output``.

    ``-safe 0`` allows absolute paths in the manifest, and ``+genpts``
    regenerates timestamps that restart at every raw HEVC segment boundary.
    """

    return [
        "ffmpeg",
        "-nostdin",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_path),
        "-c",
        "copy",
        "-fflags",
        "+genpts",
        str(output),
    ]
