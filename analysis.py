import enum
import io
import logging
import threading
from typing import Callable, List, Optional

from PIL import Image, UnidentifiedImageError

from models import (
    HISTORY_LIMIT,
    AnalysisResult,
    PersistenceError,
    StagedImage,
    ValidationError,
    VertexError,
    prepend_capped,
)
from storage import PersistenceGateway

logger = logging.getLogger(__name__)

MAX_DIMENSION = 1280
JPEG_QUALITY = 80

NO_IMAGE_MESSAGE = "Please upload a chart image first."
UNREADABLE_IMAGE_MESSAGE = "Could not read the uploaded image."
GENERIC_FAILURE_MESSAGE = "Analysis failed. Please try again."
HISTORY_SAVE_FAILED = "Failed to save analysis to history."
HISTORY_CLEAR_FAILED = "Failed to clear history from database."


def normalize_image(raw: bytes, max_dim: int = MAX_DIMENSION, quality: int = JPEG_QUALITY) -> StagedImage:
    """Downscale so the long edge is at most ``max_dim`` and re-encode as JPEG."""
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(UNREADABLE_IMAGE_MESSAGE) from e

    if img.mode != "RGB":
        img = img.convert("RGB")
    width, height = img.size
    longest = max(width, height)
    if longest > max_dim:
        scale = max_dim / longest
        width, height = max(1, round(width * scale)), max(1, round(height * scale))
        img = img.resize((width, height), Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return StagedImage(data=buf.getvalue(), mime_type="image/jpeg", width=width, height=height)


class AnalysisStatus(str, enum.Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    DONE = "done"
    ERROR = "error"


class AnalysisOrchestrator:
    def __init__(self, gateway: PersistenceGateway, analyzer: Callable[[StagedImage], AnalysisResult]):
        self.gateway = gateway
        self.analyzer = analyzer
        self.history: List[AnalysisResult] = []
        self.image: Optional[StagedImage] = None
        self.status = AnalysisStatus.IDLE
        self.result: Optional[AnalysisResult] = None
        self.error: Optional[str] = None
        # Set when the analysis succeeded but could not be written to history.
        self.persistence_error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_analyzing(self) -> bool:
        return self.status == AnalysisStatus.ANALYZING

    def restore(self, history: List[AnalysisResult]) -> None:
        self.history = list(history)[:HISTORY_LIMIT]

    def submit_image(self, raw: bytes) -> StagedImage:
        staged = normalize_image(raw)
        self.image = staged
        self.status = AnalysisStatus.IDLE
        self.result = None
        self.error = None
        self.persistence_error = None
        logger.info("Staged chart image %sx%s (%s bytes)", staged.width, staged.height, len(staged.data))
        return staged

    def run_analysis(self) -> Optional[AnalysisResult]:
        if self.image is None:
            self.status = AnalysisStatus.ERROR
            self.error = NO_IMAGE_MESSAGE
            return None
        if not self._lock.acquire(blocking=False):
            logger.warning("Analysis already in flight; ignoring second request")
            return None
        try:
            if self.status == AnalysisStatus.ANALYZING:
                return None
            self.status = AnalysisStatus.ANALYZING
            self.error = None
            self.persistence_error = None
            try:
                result = self.analyzer(self.image)
            except VertexError as e:
                logger.error("Analysis failed: %s", e.message)
                self.status = AnalysisStatus.ERROR
                self.error = e.message or GENERIC_FAILURE_MESSAGE
                return None
            except Exception as e:
                logger.exception("Unexpected analysis failure")
                self.status = AnalysisStatus.ERROR
                self.error = str(e) or GENERIC_FAILURE_MESSAGE
                return None

            self.result = result
            self.status = AnalysisStatus.DONE
            self._record(result)
            return result
        finally:
            self._lock.release()

    def _record(self, result: AnalysisResult) -> None:
        try:
            self.gateway.insert_history(result)
        except PersistenceError:
            self.persistence_error = HISTORY_SAVE_FAILED
            return
        self.history = prepend_capped(self.history, result, HISTORY_LIMIT)

    def show(self, result: AnalysisResult) -> None:
        self.result = result
        self.status = AnalysisStatus.DONE
        self.error = None

    def reset(self) -> None:
        self.image = None
        self.result = None
        self.error = None
        self.persistence_error = None
        self.status = AnalysisStatus.IDLE

    def clear_history(self) -> None:
        try:
            self.gateway.clear_history()
        except PersistenceError as e:
            raise PersistenceError(HISTORY_CLEAR_FAILED) from e
        self.history = []
        logger.info("History cleared")
