"""
Template generation and fingerprint comparison on top of NBISService.

Every operation returns either a result record or a PipelineFailure carrying a
FailureKind. Artifacts created by a failed operation are removed before it
returns.
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, ClassVar, List, Optional, Union

from nbis_service import NBISService
from uploads import UploadedFile

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 40


class FailureKind(str, Enum):
    MISSING_INPUT = "MISSING_INPUT"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    NO_FEATURES = "NO_FEATURES"
    INSUFFICIENT_FEATURES = "INSUFFICIENT_FEATURES"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class PipelineFailure:
    kind: FailureKind
    message: str
    ok: ClassVar[bool] = False


@dataclass(frozen=True)
class TemplateResult:
    source: UploadedFile
    template_path: str
    minutiae_count: int
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class FingerprintSummary:
    id: str
    name: str
    minutiae: int


@dataclass(frozen=True)
class ComparisonResult:
    first: FingerprintSummary
    second: FingerprintSummary
    score: int
    confidence: float
    is_match: bool
    threshold: int
    ok: ClassVar[bool] = True


TemplateOutcome = Union[TemplateResult, PipelineFailure]
ComparisonOutcome = Union[ComparisonResult, PipelineFailure]


def confidence_for(score: int) -> float:
    """Score expressed as a percentage, capped at 100"""
    return round(min(score / 100 * 100, 100), 2)


def is_match(score: int, threshold: int = MATCH_THRESHOLD) -> bool:
    return score >= threshold


async def gather_all(*aws: Awaitable[Any]) -> List[Any]:
    """
    Run awaitables concurrently and wait until every one of them has settled.

    Results come back in argument order. If any raised, the first exception
    (in argument order) is re-raised, but only after all siblings finished.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning(f"Failed to clean up {path}: {error}")


async def discard_artifacts(*paths: Optional[str]) -> None:
    """Delete artifacts, ignoring ones that are already gone. Never raises."""
    targets = [path for path in paths if path]
    if not targets:
        return
    results = await asyncio.gather(
        *(asyncio.to_thread(_remove, path) for path in targets),
        return_exceptions=True,
    )
    for path, result in zip(targets, results):
        if isinstance(result, BaseException):
            logger.warning(f"Failed to clean up {path}: {result}")


class FingerprintPipeline:
    """Runs extraction, counting and matching for uploaded fingerprints"""

    def __init__(self, service: NBISService, threshold: int = MATCH_THRESHOLD, retain_sources: bool = True):
        self.service = service
        self.threshold = threshold
        self.retain_sources = retain_sources

    async def generate_template(self, source: UploadedFile, template_path: Optional[str] = None) -> TemplateOutcome:
        """WSQ -> XYT for a single image"""
        xyt_file = template_path or source.template_path
        logger.info(f"Generating template for {source.original_name} (ID: {source.file_id})")

        if not await self.service.extract_minutiae(source.path, xyt_file):
            await discard_artifacts(source.path)
            return PipelineFailure(
                FailureKind.EXTRACTION_FAILED,
                "Minutiae extraction from the WSQ file failed",
            )

        minutiae_count = await self.service.count_minutiae(xyt_file)
        if minutiae_count == 0:
            await discard_artifacts(source.path, xyt_file)
            return PipelineFailure(
                FailureKind.NO_FEATURES,
                "No minutiae were extracted. The WSQ file may be corrupted or of low quality.",
            )

        if not self.retain_sources:
            await discard_artifacts(source.path)

        logger.info(f"Template generated: {minutiae_count} minutiae extracted")
        return TemplateResult(source=source, template_path=xyt_file, minutiae_count=minutiae_count)

    async def compare(self, first: UploadedFile, second: UploadedFile) -> ComparisonOutcome:
        """WSQ + WSQ -> bozorth3 score and match decision"""
        xyt1, xyt2 = first.template_path, second.template_path
        artifacts = (first.path, second.path, xyt1, xyt2)
        logger.info(f"Comparing {first.original_name} vs {second.original_name}")

        extracted = await gather_all(
            self.service.extract_minutiae(first.path, xyt1),
            self.service.extract_minutiae(second.path, xyt2),
        )
        if not all(extracted):
            await discard_artifacts(*artifacts)
            return PipelineFailure(
                FailureKind.EXTRACTION_FAILED,
                "Minutiae extraction failed for one or both files",
            )

        minutiae1, minutiae2 = await gather_all(
            self.service.count_minutiae(xyt1),
            self.service.count_minutiae(xyt2),
        )
        if minutiae1 == 0 or minutiae2 == 0:
            await discard_artifacts(*artifacts)
            return PipelineFailure(
                FailureKind.INSUFFICIENT_FEATURES,
                "One or both files do not have enough minutiae",
            )

        score = await self.service.match_fingerprints(xyt1, xyt2)
        matched = is_match(score, self.threshold)
        logger.info(f"Score: {score} | Match: {'YES' if matched else 'NO'}")

        return ComparisonResult(
            first=FingerprintSummary(id=first.file_id, name=first.original_name, minutiae=minutiae1),
            second=FingerprintSummary(id=second.file_id, name=second.original_name, minutiae=minutiae2),
            score=score,
            confidence=confidence_for(score),
            is_match=matched,
            threshold=self.threshold,
        )
