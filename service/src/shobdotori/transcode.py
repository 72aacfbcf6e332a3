from __future__ import annotations

import logging
import subprocess
import tempfile
from pathlib import Path

from shobdotori.errors import TranscodeError

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1


def convert_to_wav(
    data: bytes,
    source_suffix: str,
    *,
    ffmpeg_binary: str = "ffmpeg",
    timeout_seconds: float = 60.0,
) -> bytes:
    """Re-encode uploaded audio as 16 kHz mono WAV; WAV input passes through untouched."""
    suffix = source_suffix.lower()
    if suffix == ".wav":
        return data
    if not data:
        raise TranscodeError("empty audio payload")

    with tempfile.TemporaryDirectory(prefix="shobdotori-") as temp_dir:
        input_path = Path(temp_dir) / f"input{suffix}"
        output_path = Path(temp_dir) / "output.wav"
        input_path.write_bytes(data)

        command = [
            ffmpeg_binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(input_path),
            "-ar",
            str(TARGET_SAMPLE_RATE),
            "-ac",
            str(TARGET_CHANNELS),
            "-f",
            "wav",
            str(output_path),
        ]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TranscodeError(f"ffmpeg binary not found: {ffmpeg_binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(f"transcode timed out after {timeout_seconds:.0f}s") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            logger.warning("transcode_failed returncode=%s stderr=%s", result.returncode, stderr[-500:])
            raise TranscodeError(f"ffmpeg exited with code {result.returncode}")

        try:
            return output_path.read_bytes()
        except OSError as exc:
            raise TranscodeError("ffmpeg produced no output") from exc
