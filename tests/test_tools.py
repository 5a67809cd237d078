from __future__ import annotations

import json
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from catalogq.core.config import WorkerSettings
from catalogq.core.path_safety import PathSafetyError
from catalogq.db.models import AssetType, JobKind, JobStatus, ProxyStatus
from catalogq.jobs.types import FullJobResult, JobSnapshot, MetadataJobResult, ProxyJobResult, WorkerClaim
from catalogq.worker.processor import JobInputError, MediaJobProcessor
from catalogq.worker.tools import (
    MediaToolkit,
    ProxyOutcome,
    ToolAvailability,
    ToolCancelledError,
    ToolExecutionError,
    merge_metadata,
    parse_exiftool_output,
    parse_ffprobe_output,
    run_tool,
)

FFPROBE_OUTPUT = json.dumps(
    {
        "format": {"format_name": "mov,mp4,m4a", "duration": "12.480000", "bit_rate": "8000000"},
        "streams": [
            {
                "codec_type": "video",
                "codec_name": "prores",
                "profile": "HQ",
                "pix_fmt": "yuv422p10le",
                "width": 1920,
                "height": 1080,
                "display_aspect_ratio": "16:9",
                "r_frame_rate": "24000/1001",
            },
            {"codec_type": "audio", "codec_name": "pcm_s24le", "sample_rate": "48000", "channels": 2},
        ],
    }
)


def test_parse_ffprobe_output_extracts_technical_fields() -> None:
    meta = parse_ffprobe_output(FFPROBE_OUTPUT)
    assert meta == {
        "container_format": "mov,mp4,m4a",
        "duration": 12.48,
        "bitrate": 8000000,
        "codec": "prores",
        "codec_profile": "HQ",
        "pixel_format": "yuv422p10le",
        "width": 1920,
        "height": 1080,
        "aspect_ratio": "16:9",
        "frame_rate": 23.98,
        "sample_rate": 48000,
        "audio_channels": 2,
    }


def test_parse_ffprobe_output_uses_audio_codec_for_audio_only_files() -> None:
    meta = parse_ffprobe_output(
        json.dumps({"format": {}, "streams": [{"codec_type": "audio", "codec_name": "mp3", "channels": 1}]})
    )
    assert meta == {"codec": "mp3", "audio_channels": 1}


def test_parse_exiftool_output_maps_camera_fields() -> None:
    meta = parse_exiftool_output(
        json.dumps(
            [
                {
                    "EXIF:Make": "Canon",
                    "MakerNotes:Model": "EOS R5",
                    "EXIF:FocalLength": 35,
                    "EXIF:FNumber": 2.8,
                    "EXIF:ISO": 800,
                    "EXIF:WhiteBalance": 0,
                    "MXF:TimecodeStart": "01:00:00:00",
                }
            ]
        )
    )
    assert meta == {
        "camera_make": "Canon",
        "camera_model": "EOS R5",
        "focal_length": "35mm",
        "aperture": "f/2.8",
        "iso": 800,
        "white_balance": "Auto",
        "timecode_start": "01:00:00:00",
    }
    assert parse_exiftool_output("[]") == {}


def test_merge_metadata_prefers_ffprobe_for_stream_geometry() -> None:
    merged = merge_metadata(
        {"codec": "h264", "width": 1920, "duration": 3.0},
        {"codec": "AVC", "width": 1080, "camera_make": "Sony"},
    )
    assert merged == {"codec": "h264", "width": 1920, "duration": 3.0, "camera_make": "Sony"}


def test_run_tool_returns_stdout_and_raises_on_exit_code() -> None:
    assert run_tool([sys.executable, "-c", "print('ok')"], timeout_seconds=10).strip() == "ok"

    with pytest.raises(ToolExecutionError, match="exited with code 3"):
        run_tool([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"], timeout_seconds=10)

    with pytest.raises(ToolExecutionError, match="could not be started"):
        run_tool(["/nonexistent/ffmpeg"], timeout_seconds=1)


def test_run_tool_times_out() -> None:
    with pytest.raises(ToolExecutionError, match="timed out"):
        run_tool([sys.executable, "-c", "import time; time.sleep(30)"], timeout_seconds=0.5)


def test_run_tool_kills_process_when_cancelled() -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    started = time.monotonic()
    with pytest.raises(ToolCancelledError):
        run_tool([sys.executable, "-c", "import time; time.sleep(30)"], timeout_seconds=60, cancel_event=cancel)
    assert time.monotonic() - started < 10

    with pytest.raises(ToolCancelledError):
        run_tool([sys.executable, "-c", "print('never')"], timeout_seconds=10, cancel_event=cancel)


def test_generate_proxies_marks_unknown_types_unsupported(tmp_path: Path) -> None:
    toolkit = MediaToolkit(WorkerSettings(), ToolAvailability(ffprobe=False, exiftool=False, ffmpeg=False))
    outcome = toolkit.generate_proxies(tmp_path / "notes.txt", tmp_path / "out", AssetType.GENERIC)
    assert outcome == ProxyOutcome(proxy_status=ProxyStatus.UNSUPPORTED)

    with pytest.raises(ToolExecutionError):
        toolkit.generate_proxies(tmp_path / "clip.mov", tmp_path / "out", AssetType.VIDEO)
    with pytest.raises(ToolExecutionError):
        toolkit.extract_metadata(tmp_path / "clip.mov")


class FakeToolkit:
    def __init__(self, *, metadata_error: bool = False) -> None:
        self.metadata_error = metadata_error
        self.output_dirs: list[Path] = []

    def extract_metadata(self, input_path: Path, cancel_event: threading.Event | None = None) -> dict[str, object]:
        if self.metadata_error:
            raise ToolExecutionError("ffprobe exited with code 1")
        return {"codec": "h264"}

    def generate_proxies(
        self,
        input_path: Path,
        output_dir: Path,
        asset_type: AssetType,
        cancel_event: threading.Event | None = None,
    ) -> ProxyOutcome:
        self.output_dirs.append(output_dir)
        return ProxyOutcome(
            proxy_status=ProxyStatus.READY,
            thumbnail_path=output_dir / f"{input_path.stem}_thumb.jpg",
            proxy_path=output_dir / f"{input_path.stem}_proxy.mp4",
        )


def make_claim(tmp_path: Path, job_kind: JobKind, payload_ref: str = "shoot/clip.mov") -> WorkerClaim:
    content_root = tmp_path / "spaces" / "projects"
    (content_root / "shoot").mkdir(parents=True, exist_ok=True)
    (content_root / "shoot" / "clip.mov").write_bytes(b"\x00" * 16)
    now = datetime.now(tz=timezone.utc)
    return WorkerClaim(
        job=JobSnapshot(
            id=11,
            asset_id=42,
            space_name="projects",
            payload_ref=payload_ref,
            asset_type=AssetType.VIDEO,
            job_kind=job_kind,
            status=JobStatus.CLAIMED,
            worker_id="worker-a",
            stage=None,
            error_message=None,
            attempts=1,
            max_attempts=3,
            claimed_at=now,
            completed_at=None,
            created_at=now,
            updated_at=now,
        ),
        content_root=content_root,
        output_root=tmp_path / "catalog",
    )


def test_processor_builds_full_result_with_relative_artifact_paths(tmp_path: Path) -> None:
    toolkit = FakeToolkit()
    processor = MediaJobProcessor(WorkerSettings(), toolkit=toolkit)  # type: ignore[arg-type]

    result = processor.process(make_claim(tmp_path, JobKind.FULL), threading.Event())

    assert result == FullJobResult(
        proxy_status=ProxyStatus.READY,
        metadata={"codec": "h264"},
        thumbnail_path="proxies/projects/42/clip_thumb.jpg",
        proxy_path="proxies/projects/42/clip_proxy.mp4",
    )
    assert toolkit.output_dirs == [(tmp_path / "catalog" / "proxies" / "projects" / "42").resolve()]


def test_processor_result_shape_follows_job_kind(tmp_path: Path) -> None:
    processor = MediaJobProcessor(WorkerSettings(), toolkit=FakeToolkit())  # type: ignore[arg-type]

    metadata = processor.process(make_claim(tmp_path, JobKind.METADATA), threading.Event())
    proxy = processor.process(make_claim(tmp_path, JobKind.PROXY), threading.Event())

    assert metadata == MetadataJobResult(metadata={"codec": "h264"})
    assert isinstance(proxy, ProxyJobResult)
    assert proxy.proxy_status == ProxyStatus.READY


def test_processor_metadata_failure_is_fatal_only_for_metadata_jobs(tmp_path: Path) -> None:
    processor = MediaJobProcessor(WorkerSettings(), toolkit=FakeToolkit(metadata_error=True))  # type: ignore[arg-type]

    full = processor.process(make_claim(tmp_path, JobKind.FULL), threading.Event())
    assert isinstance(full, FullJobResult)
    assert full.metadata == {}

    with pytest.raises(ToolExecutionError):
        processor.process(make_claim(tmp_path, JobKind.METADATA), threading.Event())


def test_processor_rejects_missing_or_unsafe_inputs(tmp_path: Path) -> None:
    processor = MediaJobProcessor(WorkerSettings(), toolkit=FakeToolkit())  # type: ignore[arg-type]

    with pytest.raises(JobInputError):
        processor.process(make_claim(tmp_path, JobKind.FULL, payload_ref="shoot/missing.mov"), threading.Event())
    with pytest.raises(PathSafetyError):
        processor.process(make_claim(tmp_path, JobKind.FULL, payload_ref="../../etc/passwd"), threading.Event())
