import os
import re
import shutil
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from process_runner import DEFAULT_TIMEOUT, run_command

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSION = ".xyt"
COMMENT_MARKER = "#"
BUNDLED_BIN_DIR = Path(__file__).resolve().parent / "bin"

_LEADING_INT = re.compile(r"\d+")


@dataclass(frozen=True)
class NBISConfig:
    """Locations of the NBIS executables and the per-invocation timeout"""
    mindtct: str
    bozorth3: str
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "NBISConfig":
        """Resolve binaries from NBIS_*_PATH, then PATH, then the bundled bin/ directory"""
        timeout = float(os.getenv("NBIS_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT)))
        return cls(
            mindtct=_resolve_binary("mindtct", os.getenv("NBIS_MINDTCT_PATH")),
            bozorth3=_resolve_binary("bozorth3", os.getenv("NBIS_BOZORTH3_PATH")),
            timeout=timeout,
        )


def _resolve_binary(name: str, override: Optional[str]) -> str:
    if override:
        return override
    found = shutil.which(name)
    if found:
        return found
    return str(BUNDLED_BIN_DIR / name)


@dataclass(frozen=True)
class ToolAvailability:
    mindtct: bool
    bozorth3: bool

    @property
    def all_available(self) -> bool:
        return self.mindtct and self.bozorth3

    def as_dict(self) -> dict:
        return {"mindtct": self.mindtct, "bozorth3": self.bozorth3}


def template_output_paths(output_xyt: str) -> Tuple[str, str]:
    """
    Compute the output root handed to mindtct and the file it will really write.

    mindtct appends its own extension to the root it is given, so the root is
    the desired path without a trailing .xyt, and the produced file is
    ``<root>.xyt``. The produced path only equals the desired one when the
    desired path already ends in .xyt.
    """
    output_dir = os.path.dirname(output_xyt)
    base_name = os.path.basename(output_xyt)
    if base_name.endswith(TEMPLATE_EXTENSION):
        base_name = base_name[: -len(TEMPLATE_EXTENSION)]
    oroot = os.path.join(output_dir, base_name)
    return oroot, f"{oroot}{TEMPLATE_EXTENSION}"


def _is_readable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.R_OK)


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning(f"Failed to remove partial template {path}: {error}")


def _count_records(content: str) -> int:
    count = 0
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped and not stripped.startswith(COMMENT_MARKER):
            count += 1
    return count


class NBISService:
    """
    Fingerprint processing on top of NIST NBIS

    - mindtct extracts minutiae from a WSQ image into an .xyt template
    - bozorth3 compares two .xyt templates and prints a similarity score
    """

    def __init__(self, config: NBISConfig):
        self.config = config
        logger.info(f"NBIS paths -> mindtct: {config.mindtct}, bozorth3: {config.bozorth3}")

    async def extract_minutiae(self, wsq_file: str, output_xyt: str) -> bool:
        """Extract minutiae from a WSQ file into output_xyt. Returns True when the template exists."""
        try:
            if not await asyncio.to_thread(_is_readable, wsq_file):
                logger.error(f"WSQ file is not readable: {wsq_file}")
                return False

            output_dir = os.path.dirname(output_xyt)
            if output_dir:
                await asyncio.to_thread(os.makedirs, output_dir, exist_ok=True)

            oroot, produced_xyt = template_output_paths(output_xyt)

            # -m1: medium quality
            args = ["-m1", wsq_file, oroot]
            logger.info(f"mindtct: {' '.join(args)}")
            outcome = await run_command(self.config.mindtct, args, timeout=self.config.timeout)
            if not outcome.ok:
                logger.error(f"mindtct failed for {wsq_file}: {outcome.describe()}")
                await asyncio.to_thread(_discard, produced_xyt)
                return False

            if not await asyncio.to_thread(_is_readable, produced_xyt):
                logger.error(f"mindtct did not produce a template: {produced_xyt}")
                return False

            if produced_xyt != output_xyt:
                await asyncio.to_thread(os.replace, produced_xyt, output_xyt)

            logger.info(f"Template created: {os.path.basename(output_xyt)}")
            return True

        except OSError as error:
            logger.error(f"Error extracting minutiae from {wsq_file}: {error}")
            return False

    async def count_minutiae(self, xyt_file: str) -> int:
        """Count minutiae records in an .xyt file, 0 when it cannot be read"""
        try:
            content = await asyncio.to_thread(Path(xyt_file).read_text, encoding="utf-8", errors="replace")
        except OSError as error:
            logger.error(f"Error counting minutiae in {xyt_file}: {error}")
            return 0

        count = _count_records(content)
        logger.info(f"Minutiae found in {os.path.basename(xyt_file)}: {count}")
        return count

    async def match_fingerprints(self, xyt1: str, xyt2: str) -> int:
        """
        Compare two templates with bozorth3 in proof mode.

        Returns the bozorth3 score (0 = no match, higher = better). Unreadable
        templates, tool failures and unparsable output all yield 0.
        """
        readable = await asyncio.gather(
            asyncio.to_thread(_is_readable, xyt1),
            asyncio.to_thread(_is_readable, xyt2),
        )
        if not all(readable):
            missing = [path for path, ok in zip((xyt1, xyt2), readable) if not ok]
            logger.warning(f"Cannot match, unreadable template(s): {', '.join(missing)}")
            return 0

        args = ["-p", xyt1, xyt2]
        logger.info(f"bozorth3: {' '.join(args)}")
        outcome = await run_command(self.config.bozorth3, args, timeout=self.config.timeout)
        if not outcome.ok:
            logger.error(f"bozorth3 failed: {outcome.describe()}")
            return 0

        score = parse_score(outcome.stdout)
        logger.info(f"Score: {score}")
        return score

    async def check_tools(self) -> ToolAvailability:
        """Check that both NBIS executables exist on disk"""
        mindtct, bozorth3 = await asyncio.gather(
            asyncio.to_thread(os.path.exists, self.config.mindtct),
            asyncio.to_thread(os.path.exists, self.config.bozorth3),
        )
        return ToolAvailability(mindtct=mindtct, bozorth3=bozorth3)


def parse_score(stdout: str) -> int:
    match = _LEADING_INT.match(stdout.strip())
    return int(match.group()) if match else 0
