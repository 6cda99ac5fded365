"""Orchestrator for the validate → analyze → edit pipeline."""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from time import perf_counter
from typing import Any, Final, Literal, Protocol, TypeVar

from revision_ai.config import ModelSettings
from revision_ai.errors import (
    MarkerValidationError,
    ModelCallError,
    OperationCancelledError,
    ResponseParseError,
    RevisionError,
    ValidationError,
    as_model_call_error,
)
from revision_ai.pipelines.analysis import (
    AiAnalysisResult,
    fallback_analysis,
    is_json_payload,
    parse_analysis_response,
    parse_segmentation_response,
)
from revision_ai.pipelines.context import ProcessingContext
from revision_ai.pipelines.progress import CancellationToken, ProcessingProgress
from revision_ai.pipelines.requests import (
    AnalysisRequest,
    EditRequest,
    build_analysis_request,
    build_edit_request,
    describe_request,
)
from revision_ai.vision.image import ALLOWED_FORMATS, MAX_IMAGE_BYTES, ImageInfo, inspect_image
from revision_ai.vision.markers import (
    DetectionMarker,
    ImageMarker,
    SegmentationMarker,
    UserMarker,
)

LOG = logging.getLogger(__name__)

MAX_MARKERS: Final[int] = 10

PipelineStatus = Literal["completed", "cancelled", "error"]
T = TypeVar("T")


class SupportsAnalysis(Protocol):
    def analyze(self, request: AnalysisRequest) -> str: ...


class SupportsEdit(Protocol):
    def edit(self, request: EditRequest) -> bytes: ...


@dataclass
class PipelineConfig:
    """Limits, thresholds and retry policy for :class:`EditPipeline`.

    Attributes:
        max_image_bytes: Largest accepted input image.
        allowed_formats: Accepted Pillow format names.
        max_markers: Largest accepted marker count.
        min_analysis_confidence: Analyses below this use the local fallback.
        min_mask_confidence: Masks below this are dropped from detections.
        max_analysis_attempts: Total analysis attempts (1 = no retry).
        max_edit_attempts: Total edit attempts (1 = no retry).
        retry_delay_s: Base delay between attempts, multiplied by the attempt
            number.
        enable_fallback: When False, model/parse failures end the run with a
            typed error instead of degrading.
        fail_on_unchanged_image: Treat an edit that returns the input bytes
            unchanged as a model failure.
    """

    max_image_bytes: int = MAX_IMAGE_BYTES
    allowed_formats: frozenset[str] = ALLOWED_FORMATS
    max_markers: int = MAX_MARKERS
    min_analysis_confidence: float = 0.5
    min_mask_confidence: float = 0.5
    max_analysis_attempts: int = 2
    max_edit_attempts: int = 2
    retry_delay_s: float = 0.0
    enable_fallback: bool = True
    fail_on_unchanged_image: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Raises:
            ValueError: If a limit or attempt count is out of range.
        """
        if self.max_image_bytes <= 0:
            raise ValueError("max_image_bytes must be positive")
        if self.max_markers < 1:
            raise ValueError("max_markers must be >= 1")
        if self.max_analysis_attempts < 1 or self.max_edit_attempts < 1:
            raise ValueError("attempt counts must be >= 1")
        for name in ("min_analysis_confidence", "min_mask_confidence"):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {v}")
        if self.retry_delay_s < 0:
            raise ValueError("retry_delay_s must be >= 0")


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one pipeline run.

    ``image`` is the edited image, or the original when the edit stage
    degraded. It is empty for cancelled and failed runs.
    """

    status: PipelineStatus
    image: bytes
    original_image: bytes
    analysis: AiAnalysisResult | None = None
    detected_markers: tuple[ImageMarker, ...] = ()
    fallback_used: bool = False
    degraded: bool = False
    error: RevisionError | None = None
    progress: tuple[ProcessingProgress, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    processing_time_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def raise_for_status(self) -> None:
        """Re-raise the stored error for callers that prefer exceptions."""
        if self.status == "completed":
            return
        if self.error is not None:
            raise self.error
        raise OperationCancelledError()


def marker_violations(markers: tuple[ImageMarker, ...], max_markers: int) -> list[str]:
    out: list[str] = []
    if len(markers) > max_markers:
        out.append(f"Too many markers: {len(markers)} (max {max_markers})")
    for m in markers:
        if isinstance(m, UserMarker):
            if not (0.0 <= m.point.x <= 1.0 and 0.0 <= m.point.y <= 1.0):
                out.append(f"Marker {m.id} lies outside the image: ({m.point.x}, {m.point.y})")
        elif isinstance(m, DetectionMarker):
            b = m.box
            if not (0.0 <= b.x0 <= b.x1 <= 1.0 and 0.0 <= b.y0 <= b.y1 <= 1.0):
                out.append(f"Marker {m.id} has an invalid box: {b.to_map()}")
        elif isinstance(m, SegmentationMarker):
            b = m.mask.box
            if not (0.0 <= b.x0 <= b.x1 <= 1.0 and 0.0 <= b.y0 <= b.y1 <= 1.0):
                out.append(f"Marker {m.id} has an invalid box: {b.to_map()}")
            if m.mask.polygon is not None and not all(
                0.0 <= vx <= 1.0 and 0.0 <= vy <= 1.0 for vx, vy in m.mask.polygon
            ):
                out.append(f"Marker {m.id} has polygon vertices outside the image")
    return out


class EditPipeline:
    """Runs validation, analysis and editing with injected model callers.

    Args:
        analyzer: Produces the analysis reply for an :class:`AnalysisRequest`.
        editor: Produces edited image bytes for an :class:`EditRequest`.
        settings: Model settings; defaults to :class:`ModelSettings` defaults.
        config: Pipeline limits and policy.
        sleep: Delay function used between retries.
    """

    def __init__(
        self,
        analyzer: SupportsAnalysis,
        editor: SupportsEdit,
        *,
        settings: ModelSettings | None = None,
        config: PipelineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.analyzer = analyzer
        self.editor = editor
        self.settings = settings or ModelSettings()
        self.config = config or PipelineConfig()
        self._sleep = sleep

    def run(
        self,
        image: bytes,
        context: ProcessingContext,
        *,
        token: CancellationToken | None = None,
        on_progress: Callable[[ProcessingProgress], None] | None = None,
    ) -> PipelineResult:
        """Run the pipeline. Failures are reported in the result, not raised."""
        started = perf_counter()
        token = token or CancellationToken()
        events: list[ProcessingProgress] = []
        metadata: dict[str, Any] = {
            "processing_type": context.processing_type,
            "fallback_used": False,
            "degraded": False,
        }
        eta_total = float(context.estimated_processing_time_seconds)

        def emit(p: ProcessingProgress) -> None:
            if p.estimated_time_remaining is None and p.is_active:
                p = replace(p, estimated_time_remaining=max(0.0, eta_total * (1.0 - p.progress)))
            events.append(p)
            if on_progress is not None:
                on_progress(p)

        def finish(status: PipelineStatus, out: bytes, **kw: Any) -> PipelineResult:
            elapsed = perf_counter() - started
            metadata["processing_time_s"] = round(elapsed, 3)
            return PipelineResult(
                status=status,
                image=out,
                original_image=image,
                progress=tuple(events),
                metadata=metadata,
                processing_time_s=elapsed,
                fallback_used=bool(metadata["fallback_used"]),
                degraded=bool(metadata["degraded"]),
                **kw,
            )

        analysis: AiAnalysisResult | None = None
        try:
            token.raise_if_cancelled()
            emit(ProcessingProgress.initializing())
            LOG.info(
                "Pipeline start: type=%s quality=%s priority=%s markers=%d image_bytes=%d",
                context.processing_type,
                context.quality_level,
                context.performance_priority,
                len(context.markers),
                len(image),
            )

            # 1) Validation
            emit(ProcessingProgress.validating())
            info = self._validate(image, context)
            metadata.update(image_width=info.width, image_height=info.height, image_format=info.format)
            token.raise_if_cancelled()

            # 2) Request preparation
            emit(ProcessingProgress.preprocessing(0.0))
            request = build_analysis_request(context, image, self.settings, mime_type=info.mime_type)
            LOG.info("Analysis request prepared: %s", describe_request(request))
            emit(ProcessingProgress.preprocessing(1.0, "Image prepared"))
            token.raise_if_cancelled()

            # 3) Analysis
            emit(ProcessingProgress.analyzing(0.0))
            t0 = perf_counter()
            if context.is_detection:
                analysis, detected = self._detect(request, context, metadata)
            else:
                analysis = self._analyze(request, context, metadata)
                detected = ()
            metadata["analysis_ms"] = int((perf_counter() - t0) * 1000)
            LOG.info(
                "Step 1/2 analysis: took=%.2fs fallback=%s confidence=%.2f",
                perf_counter() - t0,
                analysis.is_fallback,
                analysis.confidence,
            )
            emit(ProcessingProgress.analyzing(1.0, "Analysis complete"))
            token.raise_if_cancelled()

            if context.is_detection:
                emit(ProcessingProgress.post_processing(0.0, f"Found {len(detected)} object(s)"))
                emit(ProcessingProgress.completed())
                return finish("completed", image, analysis=analysis, detected_markers=detected)

            # 4) Edit. Not cancellable from here on.
            emit(ProcessingProgress.processing(0.0))
            t1 = perf_counter()
            edited = self._edit(analysis, image, info, context, metadata)
            metadata["edit_ms"] = int((perf_counter() - t1) * 1000)
            LOG.info(
                "Step 2/2 edit: took=%.2fs degraded=%s output_bytes=%d",
                perf_counter() - t1,
                metadata["degraded"],
                len(edited),
            )
            emit(ProcessingProgress.processing(1.0, "Edit applied"))

            emit(ProcessingProgress.post_processing(0.0))
            emit(ProcessingProgress.completed())
            return finish("completed", edited, analysis=analysis)

        except OperationCancelledError as e:
            LOG.info("Pipeline cancelled: %s", e.reason)
            emit(ProcessingProgress.cancelled(e.reason))
            return finish("cancelled", b"", analysis=analysis, error=e)
        except ValidationError as e:
            LOG.warning("Pipeline input rejected: %s", e.message)
            emit(ProcessingProgress.error(e.message, metadata={"category": e.category}))
            return finish("error", b"", error=e)
        except (ModelCallError, ResponseParseError) as e:
            # Only reachable with enable_fallback=False.
            LOG.error("Pipeline failed: %s", e.message)
            emit(ProcessingProgress.error(e.message, metadata={"category": e.category}))
            return finish("error", b"", analysis=analysis, error=e)

    def _validate(self, image: bytes, context: ProcessingContext) -> ImageInfo:
        info = inspect_image(
            image,
            max_bytes=self.config.max_image_bytes,
            allowed_formats=self.config.allowed_formats,
        )
        context.validate()
        problems = marker_violations(context.markers, self.config.max_markers)
        if problems:
            raise MarkerValidationError("; ".join(problems), violations=problems)
        return info

    def _call(self, stage: str, fn: Callable[[], T], attempts: int) -> T:
        """Call ``fn`` up to ``attempts`` times, retrying retryable failures."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:  # external collaborator boundary
                last = as_model_call_error(e, stage=stage)
                LOG.warning(
                    "%s attempt %d/%d failed: category=%s retryable=%s error=%s",
                    stage,
                    attempt,
                    attempts,
                    last.category,
                    last.retryable,
                    e,
                )
                if not last.retryable or attempt >= attempts:
                    if last is e:
                        raise
                    raise last from e
            if self.config.retry_delay_s:
                self._sleep(self.config.retry_delay_s * attempt)
            attempt += 1

    def _analysis_text(self, request: AnalysisRequest) -> str:
        def once() -> str:
            raw = self.analyzer.analyze(request)
            if isinstance(raw, (dict, list)):
                return json.dumps(raw)
            return raw if isinstance(raw, str) else ""

        return self._call("analysis", once, self.config.max_analysis_attempts)

    def _degrade(self, metadata: dict[str, Any], key: str, reason: str) -> None:
        metadata["fallback_used"] = True
        metadata[key] = reason
        LOG.warning("Falling back (%s): %s", key, reason)

    def _analyze(
        self, request: AnalysisRequest, context: ProcessingContext, metadata: dict[str, Any]
    ) -> AiAnalysisResult:
        t0 = perf_counter()

        def elapsed_ms() -> int:
            return int((perf_counter() - t0) * 1000)

        try:
            text = self._analysis_text(request)
            result = parse_analysis_response(text, elapsed_ms())
        except (ModelCallError, ResponseParseError) as e:
            if not self.config.enable_fallback:
                raise
            self._degrade(metadata, "analysis_fallback_reason", f"{e.category}: {e.message}")
            return fallback_analysis(context, elapsed_ms())

        if result.confidence < self.config.min_analysis_confidence:
            if not self.config.enable_fallback:
                LOG.warning("Low-confidence analysis kept: %.2f", result.confidence)
                return result
            self._degrade(
                metadata,
                "analysis_fallback_reason",
                f"low_confidence: {result.confidence:.2f} < {self.config.min_analysis_confidence:.2f}",
            )
            return fallback_analysis(context, elapsed_ms())
        return result

    def _detect(
        self, request: AnalysisRequest, context: ProcessingContext, metadata: dict[str, Any]
    ) -> tuple[AiAnalysisResult, tuple[ImageMarker, ...]]:
        t0 = perf_counter()
        try:
            text = self._analysis_text(request)
            if not is_json_payload(text):
                raise ResponseParseError("Detection response is not JSON")
        except (ModelCallError, ResponseParseError) as e:
            if not self.config.enable_fallback:
                raise
            self._degrade(metadata, "analysis_fallback_reason", f"{e.category}: {e.message}")
            empty = AiAnalysisResult(
                identified_objects=(),
                editing_prompt="",
                confidence=0.0,
                processing_time_ms=int((perf_counter() - t0) * 1000),
                technical_notes="Detection unavailable",
                is_fallback=True,
            )
            return empty, ()

        masks = parse_segmentation_response(text)
        rejected = sum(1 for m in masks if m.is_parse_error)
        kept = [
            m
            for m in masks
            if not m.is_parse_error and m.confidence >= self.config.min_mask_confidence
        ]
        metadata.update(masks_total=len(masks), masks_rejected=rejected, masks_kept=len(kept))

        markers: list[ImageMarker] = []
        for i, m in enumerate(kept):
            if context.processing_type == "segmentation":
                markers.append(SegmentationMarker(id=f"mask_{i}", mask=m))
            else:
                markers.append(
                    DetectionMarker(id=f"detection_{i}", label=m.label, box=m.box, confidence=m.confidence)
                )
        confidence = sum(m.confidence for m in kept) / len(kept) if kept else 0.0
        result = AiAnalysisResult(
            identified_objects=tuple(m.label for m in kept),
            editing_prompt="",
            confidence=confidence,
            processing_time_ms=int((perf_counter() - t0) * 1000),
        )
        return result, tuple(markers)

    def _edit(
        self,
        analysis: AiAnalysisResult,
        image: bytes,
        info: ImageInfo,
        context: ProcessingContext,
        metadata: dict[str, Any],
    ) -> bytes:
        request = build_edit_request(
            analysis.editing_prompt, image, self.settings, mime_type=info.mime_type, context=context
        )
        LOG.info("Edit request prepared: %s", describe_request(request))

        def once() -> bytes:
            data = self.editor.edit(request)
            if not data:
                raise ModelCallError("Edit model returned no image", stage="edit", category="model")
            if self.config.fail_on_unchanged_image and data == image:
                raise ModelCallError(
                    "Edit model returned the input image unchanged", stage="edit", category="model"
                )
            try:
                inspect_image(data, max_bytes=max(len(data), 1), allowed_formats=ALLOWED_FORMATS)
            except ValidationError as e:
                raise ModelCallError(
                    f"Edit model returned unusable image data: {e.message}", stage="edit", category="model"
                ) from e
            return data

        try:
            return self._call("edit", once, self.config.max_edit_attempts)
        except ModelCallError as e:
            if not self.config.enable_fallback:
                raise
            self._degrade(metadata, "edit_fallback_reason", f"{e.category}: {e.message}")
            metadata["degraded"] = True
            return image
