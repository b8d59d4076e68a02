"""
Service classes for the Storyboard Render Backend.
Contains ProcessRunner, MediaProber, FrameEffectSynthesizer and VideoAssembler.
"""

import os
import math
import json
import base64
import binascii
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import ffmpeg
import requests

from config import (
    FFMPEG_BINARY,
    FFPROBE_BINARY,
    PROBE_TIMEOUT,
    CLIP_TIMEOUT_BASE,
    CLIP_TIMEOUT_PER_SECOND,
    ASSEMBLY_TIMEOUT_BASE,
    ASSEMBLY_TIMEOUT_PER_SECOND,
    IMAGE_FETCH_TIMEOUT,
    QUALITY_PRESETS,
    AUDIO_CODEC,
    AUDIO_BITRATE,
    DURATION_TOLERANCE_SECONDS,
    MIN_OUTPUT_BYTES,
)
from errors import (
    AssemblyError,
    EmptyInputError,
    EncodingError,
    MissingAudioError,
    ProbeError,
    RenderTimeoutError,
    UnsupportedImageError,
)
from motion import MotionPattern, frame_count, upscaled_size, zoompan_expressions
from schemas import RenderSettings
from store import resolve_asset_path

ProgressCallback = Callable[[float], None]

QUIET_ARGS = ("-hide_banner", "-nostdin", "-loglevel", "error")


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass
class ProbeResult:
    duration_seconds: Optional[float]
    has_audio: bool
    has_video: bool
    audio_codec: Optional[str] = None
    video_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class AssemblyResult:
    output_path: str
    file_size_bytes: int
    duration_seconds: float


class ProcessRunner:
    """Runs one external encoder process with a hard wall-clock timeout."""

    async def run(
        self,
        args: List[str],
        timeout: float,
        on_progress: Optional[ProgressCallback] = None,
        expected_duration: Optional[float] = None,
    ) -> ProcessResult:
        name = os.path.basename(args[0])
        logging.debug(f"Running command: {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EncodingError(f"{name} is not installed or not on PATH.", transient=False) from e

        stdout_lines = []

        async def read_stdout():
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                stdout_lines.append(line)
                if on_progress and expected_duration:
                    fraction = self._parse_progress(line, expected_duration)
                    if fraction is not None:
                        on_progress(fraction)

        try:
            _, stderr_bytes, _ = await asyncio.wait_for(
                asyncio.gather(read_stdout(), proc.stderr.read(), proc.wait()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(proc)
            logging.error(f"❌ {name} hit its {timeout:.0f}s timeout and was killed.")
            raise RenderTimeoutError(f"Encoder timeout: {name} ran longer than {timeout:.0f}s and was killed.")
        except asyncio.CancelledError:
            await self._kill(proc)
            logging.warning(f"{name} was cancelled and killed.")
            raise

        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            last_line = stderr.splitlines()[-1] if stderr else "no error output"
            logging.error(f"❌ {name} failed with exit code {proc.returncode}. Stderr:\n{stderr}")
            raise EncodingError(
                f"{name} exited with code {proc.returncode}: {last_line}",
                returncode=proc.returncode,
                stderr=stderr,
            )
        return ProcessResult(proc.returncode, "\n".join(stdout_lines), stderr)

    @staticmethod
    def _parse_progress(line: str, expected_duration: float) -> Optional[float]:
        # ffmpeg -progress reports out_time_us (and the misnamed out_time_ms) in microseconds
        if not (line.startswith("out_time_us=") or line.startswith("out_time_ms=")):
            return None
        try:
            seconds = int(line.split("=", 1)[1]) / 1_000_000
        except ValueError:
            return None
        return max(0.0, min(1.0, seconds / expected_duration))

    @staticmethod
    async def _kill(proc):
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()


class MediaProber:
    """Reads duration and stream metadata with ffprobe."""

    def __init__(self, runner: ProcessRunner = None, ffprobe_bin: str = FFPROBE_BINARY,
                 timeout: float = PROBE_TIMEOUT):
        self.runner = runner or ProcessRunner()
        self.ffprobe_bin = ffprobe_bin
        self.timeout = timeout

    async def _run_ffprobe(self, path: str) -> dict:
        if not path or not os.path.isfile(path):
            raise ProbeError(f"File not found: {path}")
        if not os.access(path, os.R_OK):
            raise ProbeError(f"File is not readable: {path}")

        args = [
            self.ffprobe_bin, "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            path,
        ]
        try:
            result = await self.runner.run(args, timeout=self.timeout)
        except EncodingError as e:
            raise ProbeError(f"Could not decode {os.path.basename(path)}: {e}") from e

        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError(f"Unreadable ffprobe output for {os.path.basename(path)}") from e

    @staticmethod
    def _summarize(info: dict) -> ProbeResult:
        streams = info.get("streams") or []
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
        video = next((s for s in streams if s.get("codec_type") == "video"), None)

        durations = [info.get("format", {}).get("duration")] + [s.get("duration") for s in streams]
        duration = None
        for raw in durations:
            try:
                value = float(raw)
            except (TypeError, ValueError):
                continue
            if math.isfinite(value) and value > 0:
                duration = value
                break

        return ProbeResult(
            duration_seconds=duration,
            has_audio=audio is not None,
            has_video=video is not None,
            audio_codec=audio.get("codec_name") if audio else None,
            video_codec=video.get("codec_name") if video else None,
            width=video.get("width") if video else None,
            height=video.get("height") if video else None,
        )

    async def probe(self, path: str) -> ProbeResult:
        """Probe an audio or video file; a missing or zero duration is a failure."""
        result = self._summarize(await self._run_ffprobe(path))
        if not result.has_audio and not result.has_video:
            raise ProbeError(f"No audio or video streams in {os.path.basename(path)}")
        if result.duration_seconds is None:
            raise ProbeError(f"{os.path.basename(path)} reports no usable duration (corrupt file?)")
        return result

    async def inspect_image(self, path: str) -> ProbeResult:
        """Probe a still image; requires a decodable picture with real dimensions."""
        result = self._summarize(await self._run_ffprobe(path))
        if not result.has_video or not result.width or not result.height:
            raise ProbeError(f"{os.path.basename(path)} is not a decodable image")
        return result


class FrameEffectSynthesizer:
    """Turns one still image into a short clip with a pan/zoom move."""

    def __init__(self, prober: MediaProber, runner: ProcessRunner = None, ffmpeg_bin: str = FFMPEG_BINARY):
        self.prober = prober
        self.runner = runner or prober.runner
        self.ffmpeg_bin = ffmpeg_bin

    async def synthesize(
        self,
        image: Union[str, bytes],
        duration_seconds: float,
        pattern: MotionPattern,
        workspace_dir: str,
        settings: RenderSettings,
        scene_index: int = 0,
    ) -> str:
        image_path = await self._materialize(image, workspace_dir, scene_index)
        try:
            await self.prober.inspect_image(image_path)
        except ProbeError as e:
            raise UnsupportedImageError(f"Scene {scene_index + 1}: {e}") from e

        clip_path = os.path.join(workspace_dir, f"clip_{scene_index:04d}.mp4")
        args = self.build_command(image_path, clip_path, duration_seconds, pattern, settings)
        timeout = CLIP_TIMEOUT_BASE + CLIP_TIMEOUT_PER_SECOND * duration_seconds
        await self.runner.run(args, timeout=timeout)

        if not os.path.exists(clip_path) or os.path.getsize(clip_path) == 0:
            raise EncodingError(f"Scene {scene_index + 1}: encoder produced no clip.")
        logging.info(f"🖼️ Scene clip {scene_index + 1} ready ({MotionPattern(pattern).value}, {duration_seconds:.2f}s)")
        return clip_path

    def build_command(self, image_path: str, clip_path: str, duration_seconds: float,
                      pattern: MotionPattern, settings: RenderSettings) -> List[str]:
        width, height = settings.frame_size
        up_width, up_height = upscaled_size(width, height)
        frames = frame_count(duration_seconds, settings.fps)
        expressions = zoompan_expressions(MotionPattern(pattern), frames, settings.motion_intensity)
        preset, crf = QUALITY_PRESETS[settings.quality]

        stream = (
            ffmpeg.input(image_path)
            .filter("scale", up_width, up_height, force_original_aspect_ratio="increase")
            .filter("crop", up_width, up_height)
            .filter(
                "zoompan",
                z=expressions["z"],
                x=expressions["x"],
                y=expressions["y"],
                d=frames,
                s=f"{width}x{height}",
                fps=settings.fps,
            )
            .filter("setsar", 1)
        )
        return (
            ffmpeg.output(
                stream,
                clip_path,
                vframes=frames,
                vcodec="libx264",
                preset=preset,
                crf=crf,
                pix_fmt="yuv420p",
                r=settings.fps,
                an=None,
            )
            .global_args(*QUIET_ARGS)
            .compile(cmd=self.ffmpeg_bin, overwrite_output=True)
        )

    async def _materialize(self, image: Union[str, bytes], workspace_dir: str, scene_index: int) -> str:
        """Return a local file path for the image, writing bytes into the workspace if needed."""
        if isinstance(image, (bytes, bytearray)):
            return self._write_image(bytes(image), workspace_dir, scene_index)

        if not image:
            raise UnsupportedImageError(f"Scene {scene_index + 1} has no image.")

        if image.startswith("data:image/"):
            try:
                payload = base64.b64decode(image.split(",", 1)[1], validate=True)
            except (IndexError, binascii.Error) as e:
                raise UnsupportedImageError(f"Scene {scene_index + 1}: malformed data URL") from e
            return self._write_image(payload, workspace_dir, scene_index)

        if image.startswith(("http://", "https://")):
            try:
                response = await asyncio.to_thread(requests.get, image, timeout=IMAGE_FETCH_TIMEOUT)
                response.raise_for_status()
            except requests.RequestException as e:
                raise UnsupportedImageError(f"Scene {scene_index + 1}: could not fetch {image}: {e}") from e
            return self._write_image(response.content, workspace_dir, scene_index)

        path = resolve_asset_path(image)
        if not os.path.isfile(path):
            raise UnsupportedImageError(f"Scene {scene_index + 1}: image not found at {path}")
        return path

    @staticmethod
    def _write_image(data: bytes, workspace_dir: str, scene_index: int) -> str:
        if not data:
            raise UnsupportedImageError(f"Scene {scene_index + 1}: image is empty")
        path = os.path.join(workspace_dir, f"image_{scene_index:04d}")
        with open(path, "wb") as f:
            f.write(data)
        return path


class VideoAssembler:
    """Concatenates scene clips in order and muxes them against the narration."""

    def __init__(self, prober: MediaProber, runner: ProcessRunner = None, ffmpeg_bin: str = FFMPEG_BINARY):
        self.prober = prober
        self.runner = runner or prober.runner
        self.ffmpeg_bin = ffmpeg_bin

    @staticmethod
    def write_manifest(clips: List[str], manifest_path: str) -> str:
        lines = ["ffconcat version 1.0"]
        for clip in clips:
            escaped = os.path.abspath(clip).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        with open(manifest_path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
        return manifest_path

    def build_command(self, manifest_path: str, narration_path: str, output_path: str,
                      total_seconds: float, settings: RenderSettings) -> List[str]:
        preset, crf = QUALITY_PRESETS[settings.quality]
        # Hold the last frame long enough to cover any underrun; -t cuts the overrun.
        video = (
            ffmpeg.input(manifest_path, f="concat", safe=0)
            .video
            .filter("tpad", stop_mode="clone", stop_duration=f"{total_seconds:.3f}")
            .filter("fps", settings.fps)
        )
        audio = ffmpeg.input(narration_path).audio
        return (
            ffmpeg.output(
                video,
                audio,
                output_path,
                t=f"{total_seconds:.3f}",
                vcodec="libx264",
                preset=preset,
                crf=crf,
                pix_fmt="yuv420p",
                acodec=AUDIO_CODEC,
                audio_bitrate=AUDIO_BITRATE,
                movflags="+faststart",
            )
            .global_args(*QUIET_ARGS, "-progress", "pipe:1", "-nostats")
            .compile(cmd=self.ffmpeg_bin, overwrite_output=True)
        )

    async def assemble(
        self,
        clips: List[str],
        narration_path: str,
        output_path: str,
        total_seconds: float,
        settings: RenderSettings,
        on_progress: Optional[ProgressCallback] = None,
        on_verify: Optional[ProgressCallback] = None,
    ) -> AssemblyResult:
        if not clips:
            raise EmptyInputError("No scene clips to assemble.")
        if not narration_path or not os.path.isfile(narration_path):
            raise MissingAudioError(f"Narration track not found: {narration_path}")

        manifest_path = self.write_manifest(
            clips, os.path.join(os.path.dirname(output_path), "concat.txt")
        )
        args = self.build_command(manifest_path, narration_path, output_path, total_seconds, settings)
        timeout = ASSEMBLY_TIMEOUT_BASE + ASSEMBLY_TIMEOUT_PER_SECOND * total_seconds

        logging.info(f"🎞️ Assembling {len(clips)} clips against {total_seconds:.2f}s of narration")
        try:
            await self.runner.run(args, timeout=timeout, on_progress=on_progress, expected_duration=total_seconds)
        except EncodingError as e:
            raise AssemblyError(f"Final assembly failed: {e}") from e

        return await self.verify(output_path, total_seconds, on_progress=on_verify)

    async def verify(self, output_path: str, total_seconds: float,
                     on_progress: Optional[ProgressCallback] = None) -> AssemblyResult:
        """Exit code 0 is not proof of a good file; check size and duration."""
        if not os.path.exists(output_path):
            raise AssemblyError("Encoder reported success but no output file exists.")
        size = os.path.getsize(output_path)
        if size < MIN_OUTPUT_BYTES:
            raise AssemblyError(f"Output file is implausibly small ({size} bytes).")
        if on_progress:
            on_progress(0.5)

        try:
            probed = await self.prober.probe(output_path)
        except ProbeError as e:
            raise AssemblyError(f"Output failed verification: {e}") from e
        if not probed.has_video:
            raise AssemblyError("Output has no video stream.")
        if abs(probed.duration_seconds - total_seconds) > DURATION_TOLERANCE_SECONDS:
            raise AssemblyError(
                f"Output duration {probed.duration_seconds:.2f}s deviates from "
                f"expected {total_seconds:.2f}s."
            )
        if on_progress:
            on_progress(1.0)
        return AssemblyResult(output_path=output_path, file_size_bytes=size,
                              duration_seconds=probed.duration_seconds)
