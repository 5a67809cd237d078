from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from catalogq.core.config import WorkerSettings
from catalogq.db.models import AssetType, ProxyStatus

logger = logging.getLogger(__name__)

_CANCEL_POLL_SECONDS = 0.5

VIDEO_LIKE_ASSET_TYPES = frozenset({AssetType.VIDEO, AssetType.AVID_MXF, AssetType.SEQUENCE})


class ToolExecutionError(RuntimeError):
    pass


class ToolCancelledError(RuntimeError):
    pass


@dataclass(frozen=True)
class ToolAvailability:
    ffprobe: bool
    exiftool: bool
    ffmpeg: bool


@dataclass(frozen=True)
class ProxyOutcome:
    proxy_status: ProxyStatus
    thumbnail_path: Path | None = None
    proxy_path: Path | None = None


def probe_tools(settings: WorkerSettings) -> ToolAvailability:
    availability = ToolAvailability(
        ffprobe=shutil.which(settings.ffprobe_bin) is not None,
        exiftool=shutil.which(settings.exiftool_bin) is not None,
        ffmpeg=shutil.which(settings.ffmpeg_bin) is not None,
    )
    if not availability.ffprobe:
        logger.warning("ffprobe not found; technical metadata extraction disabled")
    if not availability.exiftool:
        logger.info("exiftool not found; EXIF/MXF metadata disabled")
    if not availability.ffmpeg:
        logger.warning("ffmpeg not found; proxy generation will fail")
    return availability


def _terminate(process: subprocess.Popen[str]) -> None:
    process.kill()
    process.communicate()


def run_tool(
    command: Sequence[str],
    *,
    timeout_seconds: float,
    cancel_event: threading.Event | None = None,
) -> str:
    """Run an external tool and return its stdout.

    The process is killed when ``cancel_event`` is set (``ToolCancelledError``)
    or when it outlives ``timeout_seconds`` (``ToolExecutionError``).
    """
    name = Path(command[0]).name
    if cancel_event is not None and cancel_event.is_set():
        raise ToolCancelledError(f"{name} cancelled before start")

    try:
        process = subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        raise ToolExecutionError(f"{name} could not be started: {exc}") from exc

    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            stdout, stderr = process.communicate(timeout=_CANCEL_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                _terminate(process)
                raise ToolCancelledError(f"{name} cancelled")
            if time.monotonic() >= deadline:
                _terminate(process)
                raise ToolExecutionError(f"{name} timed out after {timeout_seconds:g}s")

    if process.returncode != 0:
        details = stderr.strip() or stdout.strip() or "process failed without output"
        raise ToolExecutionError(f"{name} exited with code {process.returncode}: {details[-2000:]}")
    return stdout


def _parse_frame_rate(raw: str | None) -> float | None:
    if not raw:
        return None
    numerator, _, denominator = raw.partition("/")
    try:
        num = int(numerator)
        den = int(denominator) if denominator else 1
    except ValueError:
        return None
    if den <= 0:
        return None
    return round(num / den, 2)


def parse_ffprobe_output(stdout: str) -> dict[str, Any]:
    data = json.loads(stdout)
    meta: dict[str, Any] = {}

    fmt = data.get("format") or {}
    if fmt.get("format_name"):
        meta["container_format"] = fmt["format_name"]
    if fmt.get("duration"):
        meta["duration"] = float(fmt["duration"])
    if fmt.get("bit_rate"):
        meta["bitrate"] = int(fmt["bit_rate"])

    streams = data.get("streams") or []
    video = next((stream for stream in streams if stream.get("codec_type") == "video"), None)
    audio = next((stream for stream in streams if stream.get("codec_type") == "audio"), None)

    if video is not None:
        meta["codec"] = video.get("codec_name")
        meta["codec_profile"] = video.get("profile")
        meta["pixel_format"] = video.get("pix_fmt")
        meta["width"] = video.get("width")
        meta["height"] = video.get("height")
        meta["aspect_ratio"] = video.get("display_aspect_ratio")
        meta["frame_rate"] = _parse_frame_rate(video.get("r_frame_rate"))

    if audio is not None:
        if audio.get("sample_rate"):
            meta["sample_rate"] = int(audio["sample_rate"])
        meta["audio_channels"] = audio.get("channels")
        if video is None:
            meta["codec"] = audio.get("codec_name")

    return {key: value for key, value in meta.items() if value is not None}


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def parse_exiftool_output(stdout: str) -> dict[str, Any]:
    results = json.loads(stdout)
    if not isinstance(results, list) or not results:
        return {}
    data: dict[str, Any] = results[0]

    focal_length = data.get("EXIF:FocalLength")
    f_number = data.get("EXIF:FNumber")
    exposure = data.get("EXIF:ExposureTime")
    white_balance = data.get("EXIF:WhiteBalance")

    meta: dict[str, Any] = {
        "camera_make": _first(data, "EXIF:Make", "MakerNotes:Make"),
        "camera_model": _first(data, "EXIF:Model", "MakerNotes:Model"),
        "camera_serial": _first(data, "EXIF:SerialNumber", "MakerNotes:SerialNumber"),
        "lens_info": _first(data, "EXIF:LensModel", "EXIF:LensInfo"),
        "focal_length": f"{focal_length}mm" if focal_length else None,
        "aperture": f"f/{f_number}" if f_number else None,
        "iso": data.get("EXIF:ISO"),
        "shutter_speed": f"{exposure}s" if exposure else None,
        "date_time_original": _first(data, "EXIF:DateTimeOriginal", "EXIF:CreateDate"),
        "gps_latitude": data.get("EXIF:GPSLatitude"),
        "gps_longitude": data.get("EXIF:GPSLongitude"),
        "color_space": _first(data, "EXIF:ColorSpace", "ICC_Profile:ColorSpaceData"),
        "white_balance": None if white_balance is None else ("Auto" if white_balance == 0 else "Manual"),
        "umid": _first(data, "MXF:MaterialPackageUMID", "XMP:UMID"),
        "timecode_start": _first(data, "MXF:TimecodeStart", "QuickTime:TimeCode"),
    }
    return {key: value for key, value in meta.items() if value is not None}


def merge_metadata(technical: dict[str, Any], descriptive: dict[str, Any]) -> dict[str, Any]:
    """Camera fields come from exiftool; stream geometry and timing always come from ffprobe."""
    merged = {**technical, **descriptive}
    for key in ("codec", "duration", "bitrate", "width", "height"):
        if key in technical:
            merged[key] = technical[key]
    return merged


class MediaToolkit:
    def __init__(self, settings: WorkerSettings, availability: ToolAvailability | None = None):
        self._settings = settings
        self._availability = availability or probe_tools(settings)

    def extract_metadata(self, input_path: Path, cancel_event: threading.Event | None = None) -> dict[str, Any]:
        if not self._availability.ffprobe and not self._availability.exiftool:
            raise ToolExecutionError("No metadata tool is available on this worker")

        technical: dict[str, Any] = {}
        descriptive: dict[str, Any] = {}
        timeout = self._settings.probe_timeout_seconds

        if self._availability.ffprobe:
            try:
                technical = parse_ffprobe_output(
                    run_tool(
                        [
                            self._settings.ffprobe_bin,
                            "-v", "quiet",
                            "-print_format", "json",
                            "-show_format",
                            "-show_streams",
                            str(input_path),
                        ],
                        timeout_seconds=timeout,
                        cancel_event=cancel_event,
                    )
                )
            except (ToolExecutionError, ValueError) as exc:
                logger.debug("ffprobe metadata extraction failed for %s: %s", input_path, exc)

        if self._availability.exiftool:
            try:
                descriptive = parse_exiftool_output(
                    run_tool(
                        [self._settings.exiftool_bin, "-json", "-G", "-n", "-s", str(input_path)],
                        timeout_seconds=timeout,
                        cancel_event=cancel_event,
                    )
                )
            except (ToolExecutionError, ValueError) as exc:
                logger.debug("exiftool metadata extraction failed for %s: %s", input_path, exc)

        return merge_metadata(technical, descriptive)

    def _ffmpeg(self, args: Sequence[str], *, timeout_seconds: float, cancel_event: threading.Event | None) -> None:
        run_tool([self._settings.ffmpeg_bin, "-y", *args], timeout_seconds=timeout_seconds, cancel_event=cancel_event)

    def generate_proxies(
        self,
        input_path: Path,
        output_dir: Path,
        asset_type: AssetType,
        cancel_event: threading.Event | None = None,
    ) -> ProxyOutcome:
        if asset_type not in VIDEO_LIKE_ASSET_TYPES and asset_type not in (AssetType.AUDIO, AssetType.IMAGE):
            return ProxyOutcome(proxy_status=ProxyStatus.UNSUPPORTED)
        if not self._availability.ffmpeg:
            raise ToolExecutionError("ffmpeg is not available on this worker")

        output_dir.mkdir(parents=True, exist_ok=True)
        stem = input_path.stem
        source = str(input_path)
        thumb_timeout = self._settings.thumbnail_timeout_seconds
        proxy_timeout = self._settings.proxy_timeout_seconds

        if asset_type in VIDEO_LIKE_ASSET_TYPES:
            thumb_path = output_dir / f"{stem}_thumb.jpg"
            proxy_path = output_dir / f"{stem}_proxy.mp4"
            self._ffmpeg(
                ["-ss", "2", "-i", source, "-vframes", "1", "-vf", "scale=480:-2", "-q:v", "4", str(thumb_path)],
                timeout_seconds=thumb_timeout,
                cancel_event=cancel_event,
            )
            self._ffmpeg(
                [
                    "-i", source,
                    "-vf", "scale=-2:720",
                    "-c:v", "libx264",
                    "-preset", "fast",
                    "-crf", "28",
                    "-c:a", "aac",
                    "-b:a", "128k",
                    "-ac", "2",
                    "-movflags", "+faststart",
                    str(proxy_path),
                ],
                timeout_seconds=proxy_timeout,
                cancel_event=cancel_event,
            )
            return ProxyOutcome(proxy_status=ProxyStatus.READY, thumbnail_path=thumb_path, proxy_path=proxy_path)

        if asset_type == AssetType.AUDIO:
            thumb_path = output_dir / f"{stem}_waveform.png"
            proxy_path = output_dir / f"{stem}_proxy.mp3"
            self._ffmpeg(
                ["-i", source, "-filter_complex", "showwavespic=s=480x120:colors=#3b82f6", "-frames:v", "1", str(thumb_path)],
                timeout_seconds=thumb_timeout,
                cancel_event=cancel_event,
            )
            self._ffmpeg(
                ["-i", source, "-c:a", "libmp3lame", "-b:a", "128k", "-ac", "2", str(proxy_path)],
                timeout_seconds=proxy_timeout,
                cancel_event=cancel_event,
            )
            return ProxyOutcome(proxy_status=ProxyStatus.READY, thumbnail_path=thumb_path, proxy_path=proxy_path)

        thumb_path = output_dir / f"{stem}_thumb.jpg"
        self._ffmpeg(
            ["-i", source, "-vf", "scale=480:-2", "-q:v", "4", str(thumb_path)],
            timeout_seconds=thumb_timeout,
            cancel_event=cancel_event,
        )
        return ProxyOutcome(proxy_status=ProxyStatus.READY, thumbnail_path=thumb_path)
