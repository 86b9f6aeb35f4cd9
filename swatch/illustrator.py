"""Adobe Illustrator rendering through COM (VBScript + cscript), Windows only."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from typing import Callable, Optional

from PIL import Image

from swatch.errors import SwatchError

logger = logging.getLogger("swatch.illustrator")

DEFAULT_TIMEOUT = 120  # seconds
EXPORT_MAX_DIM = 1200

# VBScript exit code -> (error code, operator hint)
EXIT_CODES = {
    1: ("ILLUSTRATOR_COM_CREATE_FAILED",
        "could not create Illustrator.Application; is Illustrator installed and licensed?"),
    2: ("ILLUSTRATOR_OPEN_FAILED",
        "Illustrator could not open the file (corrupt, protected or incompatible version)"),
    3: ("ILLUSTRATOR_EXPORT_FAILED",
        "JPEG export failed (disk full or temp directory not writable?)"),
}

_SCRIPT = """\
Option Explicit
On Error Resume Next

Dim app, opts, doc, jpg, w, h, scale
Set app = CreateObject("Illustrator.Application")
If Err.Number <> 0 Then
  WScript.StdErr.Write "ERROR: Could not start Illustrator: " & Err.Description
  WScript.Quit 1
End If
Err.Clear
app.UserInteractionLevel = -1

Set opts = CreateObject("Illustrator.OpenOptions")
opts.UpdateLinks = 2
Set doc = app.Open("{src}", 1, opts)
If Err.Number <> 0 Then
  WScript.StdErr.Write "ERROR: Could not open file: " & Err.Description
  WScript.Quit 2
End If
Err.Clear

Set jpg = CreateObject("Illustrator.ExportOptionsJPEG")
jpg.QualityFactor = 85
jpg.AntiAliasing = True
jpg.Optimization = True
w = doc.Width
h = doc.Height
scale = 100
If w >= h And w > {max_dim} Then scale = ({max_dim} / w) * 100
If h > w And h > {max_dim} Then scale = ({max_dim} / h) * 100
jpg.HorizontalScale = scale
jpg.VerticalScale = scale

doc.Export "{dst}", 1, jpg
If Err.Number <> 0 Then
  WScript.StdErr.Write "ERROR: Export failed: " & Err.Description
  doc.Close 2
  WScript.Quit 3
End If
doc.Close 2
WScript.StdOut.Write "OK"
WScript.Quit 0
"""


class IllustratorError(SwatchError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code


def find_cscript() -> Optional[str]:
    # Sysnative escapes WoW64 redirection for 32-bit interpreters on 64-bit Windows
    for candidate in (r"C:\Windows\Sysnative\cscript.exe", r"C:\Windows\System32\cscript.exe"):
        if os.path.exists(candidate):
            return candidate
    return shutil.which("cscript")


def build_script(src: str, dst: str, max_dim: int = EXPORT_MAX_DIM) -> str:
    # VBScript string literals escape a double quote by doubling it
    return _SCRIPT.format(
        src=src.replace('"', '""'), dst=dst.replace('"', '""'), max_dim=max_dim
    )


def render_with_illustrator(path: str, cscript: str, timeout: float = DEFAULT_TIMEOUT) -> Image.Image:
    with tempfile.TemporaryDirectory(prefix="swatch-ai-") as tmp:
        script_path = os.path.join(tmp, "render.vbs")
        out_path = os.path.join(tmp, "output.jpg")
        with open(script_path, "w", encoding="utf-8") as f:
            f.write(build_script(path, out_path))

        logger.info("Illustrator render %s", path)
        try:
            proc = subprocess.run(
                [cscript, "//Nologo", "//E:VBScript", script_path],
                capture_output=True, text=True, timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise IllustratorError(
                "ILLUSTRATOR_TIMEOUT",
                f"no response within {timeout}s (crash-recovery or licensing dialog?)",
            ) from e

        stderr = (proc.stderr or "").strip()
        if proc.returncode != 0:
            code, hint = EXIT_CODES.get(
                proc.returncode,
                ("ILLUSTRATOR_UNEXPECTED_ERROR", f"VBScript exited with code {proc.returncode}"),
            )
            raise IllustratorError(code, f"{hint}: {stderr}" if stderr else hint)
        if "ERROR:" in stderr or "OK" not in (proc.stdout or ""):
            raise IllustratorError("ILLUSTRATOR_UNEXPECTED_ERROR",
                                   stderr or (proc.stdout or "")[:300])
        if not os.path.exists(out_path) or os.path.getsize(out_path) == 0:
            raise IllustratorError("ILLUSTRATOR_EMPTY_OUTPUT", "export produced an empty file")

        with Image.open(out_path) as img:
            img.load()
            return img.copy()


class CircuitBreaker:
    """Stops calling Illustrator after `failure_limit` consecutive failures.

    While open, available() is False until `cooldown` seconds pass; then one
    trial call is allowed. The failure count is kept, so a failed trial re-opens
    the breaker immediately.
    """

    def __init__(self, failure_limit: int = 3, cooldown: float = 600,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.failure_limit = failure_limit
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self.consecutive_failures = 0
        self._open_until: Optional[float] = None

    def available(self) -> bool:
        with self._lock:
            if self._open_until is None:
                return True
            if self._clock() >= self._open_until:
                logger.info("Illustrator cooldown expired, allowing a trial call")
                self._open_until = None
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self.consecutive_failures:
                logger.info("Illustrator breaker reset after %d failures",
                            self.consecutive_failures)
            self.consecutive_failures = 0
            self._open_until = None

    def record_failure(self) -> None:
        with self._lock:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.failure_limit and self._open_until is None:
                self._open_until = self._clock() + self.cooldown
                logger.error("Illustrator breaker tripped after %d failures; cooling down %ss",
                             self.consecutive_failures, self.cooldown)

    def status(self) -> dict:
        with self._lock:
            is_open = self._open_until is not None and self._clock() < self._open_until
            return {
                "illustrator_circuit_breaker": "open" if is_open else "closed",
                "consecutive_failures": self.consecutive_failures,
            }
