import asyncio
import logging
import math
import re
import uuid
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import ffmpeg

from shorts_backend.config import Settings, get_settings
from shorts_backend.domain.errors import (
    InvalidInputError,
    InvalidWindowError,
    ProcessFailureError,
    SourceFileNotFoundError,
    TrimError,
)
from shorts_backend.logging_setup import bind

_TIMESTAMP_RE = re.compile(r"^(\d+):([0-5]\d):([0-5]\d)(?:\.(\d{1,3}))?$")

Window = Union[Tuple[float, float], Sequence[float], Any]


def format_timestamp(seconds: float) -> str:
    """
    Render seconds as ``HH:MM:SS[.mmm]`` for ffmpeg.

    Rounded to the millisecond; trailing fractional zeros are dropped and whole
    seconds carry no fraction at all (``65.5`` -> ``00:01:05.5``).
    """
    value = float(seconds)
    if not math.isfinite(value) or value < 0:
        raise InvalidInputError("Timestamps must be finite non-negative numbers.")

    total_ms = int(round(value * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)

    text = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    if millis:
        text += "." + f"{millis:03d}".rstrip("0")
    return text


def parse_timestamp(text: str) -> float:
    match = _TIMESTAMP_RE.match((text or "").strip())
    if not match:
        raise InvalidInputError(f"Invalid timestamp: {text!r}")
    hours, minutes, secs, fraction = match.groups()
    millis = int((fraction or "").ljust(3, "0") or 0)
    total_ms = ((int(hours) * 60 + int(minutes)) * 60 + int(secs)) * 1000 + millis
    return total_ms / 1000


def _window_bounds(window: Window) -> Tuple[Any, Any]:
    if isinstance(window, (list, tuple)) and len(window) >= 2:
        return window[0], window[1]
    if isinstance(window, dict):
        return window.get("start"), window.get("end")
    if hasattr(window, "start") and hasattr(window, "end"):
        return window.start, window.end
    return None, None


def validate_windows(windows: Sequence[Window]) -> List[Tuple[float, float]]:
    """Check every window up front so a bad list never produces partial output."""
    if not windows:
        raise InvalidInputError("windows must be a non-empty list of (start, end) pairs.")

    resolved = []
    for index, window in enumerate(windows):
        raw_start, raw_end = _window_bounds(window)
        try:
            start, end = float(raw_start), float(raw_end)
        except (TypeError, ValueError):
            raise InvalidWindowError(
                index, f"Segment at index {index} contains non-numeric timestamps."
            ) from None
        if not (math.isfinite(start) and math.isfinite(end)):
            raise InvalidWindowError(
                index, f"Segment at index {index} contains non-numeric timestamps."
            )
        if start < 0 or end <= start:
            raise InvalidWindowError(index)
        resolved.append((start, end))
    return resolved


class FfmpegTrimmer:
    """Cut clips out of a local video with stream copy, one ffmpeg run per window."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._logger = logger

    @property
    def ffmpeg_cmd(self) -> str:
        return self.settings.FFMPEG_PATH or "ffmpeg"

    def build_stream(self, input_path: Path, output_path: Path, start: float, end: float, *, overwrite: bool):
        input_kwargs = {"ss": format_timestamp(start)} if start > 0 else {}
        stream = ffmpeg.input(str(input_path), **input_kwargs).output(
            str(output_path), t=format_timestamp(end - start), c="copy"
        )
        return stream.overwrite_output() if overwrite else stream.global_args("-n")

    async def trim(
        self,
        input_path: Union[str, Path],
        windows: Sequence[Window],
        output_dir: Optional[Union[str, Path]] = None,
        overwrite: bool = True,
    ) -> List[Path]:
        """
        Write one clip per window and return their paths in window order.

        Raises InvalidWindowError before running anything if any window is bad,
        and TrimError (naming the window) if ffmpeg fails; clips written before
        the failing one are left in place.
        """
        if not input_path or not str(input_path).strip():
            raise InvalidInputError("A valid input path is required.")
        resolved_windows = validate_windows(windows)

        source = Path(input_path).resolve()
        if not source.is_file():
            raise SourceFileNotFoundError(f"Input video not found: {source}")

        target_dir = Path(output_dir or self.settings.TRIM_OUTPUT_DIR).resolve()
        target_dir.mkdir(parents=True, exist_ok=True)
        extension = source.suffix or ".mp4"
        log = bind(self._logger, __name__, source=source.name)

        outputs: List[Path] = []
        for index, (start, end) in enumerate(resolved_windows):
            output_path = target_dir / f"{source.stem}_clip_{index + 1}_{uuid.uuid4().hex[:8]}{extension}"
            stream = self.build_stream(source, output_path, start, end, overwrite=overwrite)
            log.info("Trimming clip %d: %.3fs-%.3fs -> %s", index + 1, start, end, output_path.name)
            try:
                await asyncio.to_thread(
                    ffmpeg.run,
                    stream,
                    cmd=self.ffmpeg_cmd,
                    capture_stdout=True,
                    capture_stderr=True,
                )
            except ffmpeg.Error as exc:
                stderr = (exc.stderr or b"").decode(errors="replace").strip()
                raise TrimError(
                    index,
                    f"FFmpeg failed while creating clip {index + 1}: {stderr or exc}",
                    stderr=stderr,
                ) from exc
            except OSError as exc:
                raise ProcessFailureError(f"Failed to execute {self.ffmpeg_cmd}: {exc}") from exc
            outputs.append(output_path)

        return outputs
