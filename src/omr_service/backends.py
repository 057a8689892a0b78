"""
Recognition backends.

A backend turns one input document into one MusicXML file. The job manager
only relies on the ``ConversionBackend`` protocol below; it never inspects
how recognition happens. Implementations must be safe to call from several
worker threads at once, which in practice means keeping all per-call state
on the stack and in the paths they are given.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import time
import zipfile
from pathlib import Path
from typing import Optional, Protocol
from xml.etree import ElementTree

from .configuration import Settings
from .errors import BackendFailure, BackendTimeout
from .utils import ensure_directory

logger = logging.getLogger(__name__)

MUSICXML_SUFFIXES = (".musicxml", ".xml")
COMPRESSED_SUFFIX = ".mxl"

PLACEHOLDER_MUSICXML = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE score-partwise PUBLIC "-//Recordare//DTD MusicXML 3.1 Partwise//EN" "http://www.musicxml.org/dtds/partwise.dtd">
<score-partwise version="3.1">
  <work><work-title>Converted Sheet Music</work-title></work>
  <identification>
    <creator type="software">OMR Service</creator>
  </identification>
  <part-list>
    <score-part id="P1">
      <part-name>Music</part-name>
    </score-part>
  </part-list>
  <part id="P1">
    <measure number="1">
      <attributes>
        <divisions>1</divisions>
        <key><fifths>0</fifths></key>
        <time><beats>4</beats><beat-type>4</beat-type></time>
        <clef><sign>G</sign><line>2</line></clef>
      </attributes>
      <note><pitch><step>C</step><octave>4</octave></pitch><duration>4</duration><type>whole</type></note>
    </measure>
  </part>
</score-partwise>
"""


class ConversionBackend(Protocol):
    """File-in/file-out recognition contract."""

    def convert(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> bytes:
        """
        Recognise ``input_path`` and write MusicXML to ``output_path``.

        Args:
            input_path: Stored upload (image or PDF)
            output_path: Where the artifact must be written
            timeout: Deadline in seconds, or None for no deadline

        Returns:
            The artifact content as written to ``output_path``

        Raises:
            BackendFailure: Malformed input or engine failure
            BackendTimeout: The deadline elapsed
        """
        ...


def _require_input(input_path: Path) -> None:
    if not input_path.is_file():
        raise BackendFailure(f"Input document not found: {input_path.name}")
    if input_path.stat().st_size == 0:
        raise BackendFailure("Input document is empty")


class PlaceholderBackend:
    """
    Stand-in engine that emits a fixed one-measure score.

    Sleeps for ``delay`` seconds to mimic recognition latency, then writes a
    well-formed MusicXML 3.1 partwise document.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay

    def convert(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> bytes:
        _require_input(input_path)

        if timeout is not None and self.delay > timeout:
            time.sleep(timeout)
            raise BackendTimeout(timeout)
        if self.delay:
            time.sleep(self.delay)

        content = PLACEHOLDER_MUSICXML.encode("utf-8")
        output_path.write_bytes(content)
        return content


class CommandLineBackend:
    """
    Runs an external OMR engine (for example the Audiveris CLI).

    The command template is split shell-style and each token is formatted
    with ``{input}``, ``{output}`` and ``{output_dir}``. Engines that choose
    their own output names (Audiveris exports ``<stem>.mxl`` into the
    ``-output`` directory) are handled by collecting the first MusicXML file
    found in ``{output_dir}``; compressed ``.mxl`` archives are unpacked.
    """

    def __init__(self, command_template: str) -> None:
        if not command_template.strip():
            raise ValueError("command_template must not be empty")
        self.command_template = command_template

    def build_command(self, input_path: Path, output_path: Path, export_dir: Path) -> list[str]:
        return [
            token.format(input=str(input_path), output=str(output_path), output_dir=str(export_dir))
            for token in shlex.split(self.command_template)
        ]

    def convert(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> bytes:
        _require_input(input_path)
        export_dir = output_path.parent / f"{output_path.stem}_export"

        try:
            ensure_directory(export_dir)
            try:
                command = self.build_command(input_path, output_path, export_dir)
            except (KeyError, IndexError, ValueError) as exc:
                raise BackendFailure(f"Invalid OMR command template: {exc!r}") from exc
            logger.debug(f"Running OMR command: {' '.join(command)}")

            try:
                completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout, check=False)
            except subprocess.TimeoutExpired as exc:
                raise BackendTimeout(timeout or 0.0) from exc
            except OSError as exc:
                raise BackendFailure(f"Could not start OMR engine: {exc}") from exc

            if completed.returncode != 0:
                detail = (completed.stderr or completed.stdout or "").strip().splitlines()
                message = detail[-1] if detail else f"exit status {completed.returncode}"
                raise BackendFailure(f"OMR engine failed: {message}")

            if not output_path.is_file():
                content = self._collect_export(export_dir)
                output_path.write_bytes(content)
            return output_path.read_bytes()
        finally:
            shutil.rmtree(export_dir, ignore_errors=True)

    def _collect_export(self, export_dir: Path) -> bytes:
        exported = sorted(path for path in export_dir.rglob("*") if path.is_file())
        for path in exported:
            if path.suffix.lower() in MUSICXML_SUFFIXES:
                return path.read_bytes()
        for path in exported:
            if path.suffix.lower() == COMPRESSED_SUFFIX:
                return _read_compressed_musicxml(path)
        raise BackendFailure("OMR engine produced no MusicXML output")


def _read_compressed_musicxml(archive_path: Path) -> bytes:
    """Extract the root score from a compressed MusicXML (.mxl) archive."""
    try:
        with zipfile.ZipFile(archive_path) as archive:
            names = archive.namelist()
            root_name = None
            if "META-INF/container.xml" in names:
                container = ElementTree.fromstring(archive.read("META-INF/container.xml"))
                rootfile = container.find(".//rootfile")
                if rootfile is not None:
                    root_name = rootfile.get("full-path")
            if root_name is None:
                root_name = next(
                    (name for name in names if not name.startswith("META-INF/") and name.lower().endswith(MUSICXML_SUFFIXES)),
                    None,
                )
            if root_name is None:
                raise BackendFailure(f"No score found in {archive_path.name}")
            return archive.read(root_name)
    except (zipfile.BadZipFile, KeyError, ElementTree.ParseError) as exc:
        raise BackendFailure(f"Unreadable compressed MusicXML {archive_path.name}: {exc}") from exc


def build_backend(settings: Settings) -> ConversionBackend:
    if settings.backend == "command":
        return CommandLineBackend(settings.backend_command)
    return PlaceholderBackend(delay=settings.placeholder_delay_seconds)
