"""Video compression before deployment (opaque FFmpeg transform)"""

import asyncio
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from .. import config

logger = logging.getLogger(__name__)

MIN_USEFUL_RATIO = 1.1
TEMP_FILE_MAX_AGE_S = 3600


@dataclass
class CompressionOptions:
    crf: int = 23
    preset: str = "medium"
    max_bitrate: Optional[str] = None
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"


@dataclass
class CompressionResult:
    success: bool
    input_size: int
    output_size: int = 0
    compression_ratio: float = 0.0
    duration_ms: int = 0
    error: Optional[str] = None


# (input_path, output_path, options) -> None, raising on failure
Transcoder = Callable[[str, str, CompressionOptions], Awaitable[None]]


class VideoCompressionService:
    """Compresses large uploads, keeping the original when it is not worth it"""

    def __init__(self, transcoder: Transcoder = None, temp_dir: str = None, threshold_mb: float = None):
        self.temp_dir = temp_dir or os.path.join(tempfile.gettempdir(), "fleetsync-video-compression")
        os.makedirs(self.temp_dir, exist_ok=True)
        self.threshold_mb = config.VIDEO_COMPRESSION_THRESHOLD_MB if threshold_mb is None else threshold_mb
        self.transcoder = transcoder or self._run_ffmpeg

    def should_compress(self, size_bytes: int) -> bool:
        return size_bytes / (1024 * 1024) > self.threshold_mb

    async def compress(
        self,
        data: bytes,
        name: str,
        options: CompressionOptions = None,
    ) -> Tuple[Optional[bytes], CompressionResult]:
        """Compress ``data``; never raises.

        Returns the bytes to store (compressed, original, or ``None`` on
        failure) and a result describing what happened.
        """
        options = options or CompressionOptions()
        started = time.monotonic()
        input_size = len(data)
        job_id = uuid.uuid4().hex
        ext = os.path.splitext(name)[1] or ".mp4"
        input_path = os.path.join(self.temp_dir, f"input-{job_id}{ext}")
        output_path = os.path.join(self.temp_dir, f"output-{job_id}.mp4")

        try:
            with open(input_path, "wb") as fh:
                fh.write(data)

            logger.info(f"Starting video compression of {name} ({input_size / (1024 * 1024):.1f}MB)")
            await self.transcoder(input_path, output_path, options)

            if not os.path.exists(output_path):
                raise RuntimeError("Output file not created")
            with open(output_path, "rb") as fh:
                output = fh.read()

            duration_ms = int((time.monotonic() - started) * 1000)
            ratio = input_size / len(output) if output else 0.0
            logger.info(f"Video compression completed: ratio {ratio:.2f} in {duration_ms}ms")

            if ratio < MIN_USEFUL_RATIO:
                logger.info("Compression did not reduce size significantly, using original")
                return data, CompressionResult(
                    success=True,
                    input_size=input_size,
                    output_size=input_size,
                    compression_ratio=1.0,
                    duration_ms=duration_ms,
                )

            return output, CompressionResult(
                success=True,
                input_size=input_size,
                output_size=len(output),
                compression_ratio=ratio,
                duration_ms=duration_ms,
            )
        except Exception as e:
            logger.error(f"Video compression failed for {name}: {e}")
            return None, CompressionResult(success=False, input_size=input_size, error=str(e))
        finally:
            for path in (input_path, output_path):
                self._remove(path)

    async def _run_ffmpeg(self, input_path: str, output_path: str, options: CompressionOptions):
        args = [
            config.FFMPEG_PATH,
            "-i", input_path,
            "-c:v", "libx264",
            "-crf", str(options.crf),
            "-preset", options.preset,
        ]
        if options.max_bitrate:
            args += ["-maxrate", options.max_bitrate, "-bufsize", options.max_bitrate]
        args += [
            "-c:a", options.audio_codec,
            "-b:a", options.audio_bitrate,
            "-movflags", "+faststart",
            "-y",
            output_path,
        ]

        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-500:]
            raise RuntimeError(f"ffmpeg exited with code {proc.returncode}: {tail}")

    def cleanup_old_temp_files(self, max_age_s: float = TEMP_FILE_MAX_AGE_S) -> int:
        cleaned = 0
        cutoff = time.time() - max_age_s
        try:
            for entry in os.scandir(self.temp_dir):
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    os.unlink(entry.path)
                    cleaned += 1
        except OSError as e:
            logger.error(f"Failed to clean up old temp files: {e}")
        if cleaned:
            logger.info(f"Cleaned {cleaned} old temp compression file(s)")
        return cleaned

    @staticmethod
    def _remove(path: str):
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clean up temp file {path}: {e}")
