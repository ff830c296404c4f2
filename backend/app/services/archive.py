"""
Archive classification and extraction through the system archive utilities.

Each supported ``ArchiveKind`` has one ``Extractor`` that knows the command
line for its tool and how to read extracted member names back out of the
tool's verbose transcript.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

from app.schemas.upload import ArchiveKind
from app.services.command_runner import run_command
from app.services.errors import EmptyResultError, ToolExecutionError, UnsupportedFormatError

logger = logging.getLogger(__name__)


# Compound suffixes first so "x.tar.gz" never matches ".tar"
SUFFIXES = (
    (".tar.gz", ArchiveKind.TAR_GZ),
    (".tgz", ArchiveKind.TAR_GZ),
    (".tar", ArchiveKind.TAR),
    (".zip", ArchiveKind.ZIP),
    (".rar", ArchiveKind.RAR),
)

SUPPORTED_SUFFIXES = tuple(suffix for suffix, _ in SUFFIXES)


def classify_archive(filename: str) -> ArchiveKind:
    """
    Classify an archive by its filename suffix (case-insensitive).

    Parameters
    ----------
    filename : str
        Name of the uploaded file; directories in the name are ignored.

    Returns
    -------
    ArchiveKind
        ``ArchiveKind.UNKNOWN`` when no supported suffix matches.
    """
    name = filename.strip().lower()
    for suffix, kind in SUFFIXES:
        if name.endswith(suffix):
            return kind
    return ArchiveKind.UNKNOWN


@dataclass
class ExtractionResult:
    members: List[str]
    output: str = ""
    return_code: int = 0


class Extractor:
    """Base extractor: runs a tool and parses member names from its output."""

    kind: ArchiveKind = ArchiveKind.UNKNOWN
    extension: str = ""
    markers: Tuple[str, ...] = ()
    # Non-zero exit codes the tool uses for "finished, with warnings"
    warning_return_codes: Tuple[int, ...] = ()

    def command(self, archive: Path, destination: Path) -> List[str]:
        raise NotImplementedError

    def parse_members(self, output: str) -> List[str]:
        """Pull member names out of the tool's transcript using ``markers``."""
        pattern = re.compile(
            r"(?:" + "|".join(re.escape(m) for m in self.markers) + r")\s*(.+)"
        )
        members = []
        for line in output.splitlines():
            match = pattern.search(line)
            if match and match.group(1).strip():
                members.append(match.group(1).strip())
        return members

    def extract(
        self,
        archive: Path,
        destination: Path,
        timeout: float = 300,
        max_output_bytes: int = 100 * 1024 * 1024,
    ) -> ExtractionResult:
        """Extract ``archive`` into ``destination``.

        Raises ToolExecutionError on a failing exit code, timeout or output
        overrun, and EmptyResultError when no members could be recovered.
        """
        logger.info(f"Extracting {self.kind.value} archive {archive.name} into {destination}")
        result = run_command(
            self.command(archive, destination),
            timeout=timeout,
            max_output_bytes=max_output_bytes,
            check=False,
        )
        members = self.parse_members(result.output)

        if not result.ok and result.return_code not in self.warning_return_codes:
            raise ToolExecutionError(
                f"{result.command[0]} failed with return code {result.return_code}: "
                f"{result.tail(500).strip()}",
                command=result.command,
                return_code=result.return_code,
                output=result.tail(),
            )
        if not result.ok:
            logger.warning(
                f"{result.command[0]} finished with warnings (return code {result.return_code})"
            )
        logger.info(f"Extracted {len(members)} items from {self.kind.value} archive")

        if not members:
            raise EmptyResultError(
                f"No files were found inside the {self.kind.value} archive "
                "(it may be empty or corrupt)"
            )
        return ExtractionResult(
            members=members, output=result.output, return_code=result.return_code
        )


class TarExtractor(Extractor):
    kind = ArchiveKind.TAR
    extension = ".tar"
    flags = "-xvf"

    def command(self, archive: Path, destination: Path) -> List[str]:
        return ["tar", self.flags, str(archive), "-C", str(destination)]

    def parse_members(self, output: str) -> List[str]:
        # Verbose tar prints one member name per line
        return [line.strip() for line in output.splitlines() if line.strip()]


class TarGzExtractor(TarExtractor):
    kind = ArchiveKind.TAR_GZ
    extension = ".tar.gz"
    flags = "-xzvf"


class ZipExtractor(Extractor):
    kind = ArchiveKind.ZIP
    extension = ".zip"
    # unzip reports stored (uncompressed) members as "extracting:"
    markers = ("inflating:", "creating:", "extracting:")
    # unzip exits 1 for warnings, including "zipfile is empty"
    warning_return_codes = (1,)

    def command(self, archive: Path, destination: Path) -> List[str]:
        return ["unzip", "-o", str(archive), "-d", str(destination)]


_RAR_STATUS_RE = re.compile(r"(?:\s+\d+%)*\s+OK\s*$")


class RarExtractor(Extractor):
    kind = ArchiveKind.RAR
    extension = ".rar"
    markers = ("Extracting", "Creating")

    def command(self, archive: Path, destination: Path) -> List[str]:
        return ["unrar", "x", "-o+", str(archive), f"{destination}/"]

    def parse_members(self, output: str) -> List[str]:
        members = []
        for member in super().parse_members(output):
            # "Extracting from x.rar" is the banner, not a member
            if member.startswith("from "):
                continue
            member = _RAR_STATUS_RE.sub("", member).strip()
            if member:
                members.append(member)
        return members


EXTRACTORS: Dict[ArchiveKind, Extractor] = {
    ArchiveKind.TAR: TarExtractor(),
    ArchiveKind.TAR_GZ: TarGzExtractor(),
    ArchiveKind.ZIP: ZipExtractor(),
    ArchiveKind.RAR: RarExtractor(),
}


def get_extractor(kind: ArchiveKind) -> Extractor:
    try:
        return EXTRACTORS[kind]
    except KeyError:
        raise UnsupportedFormatError(
            f"Unsupported archive type. Supported: {', '.join(SUPPORTED_SUFFIXES)}"
        ) from None
