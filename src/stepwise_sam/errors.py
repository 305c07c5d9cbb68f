"""Error taxonomy for the segmentation pipeline."""


class SegmentationError(Exception):
    """Base class for every error raised by `stepwise_sam`."""


class ShapeMismatch(SegmentationError, ValueError):
    """A tensor or prompt does not have the shape its consumer requires."""


class PromptShapeMismatch(ShapeMismatch):
    """Prompt points and labels have different lengths."""


class AlreadyScheduling(SegmentationError, RuntimeError):
    """A model was asked to run while one of its schedules is still open."""


class ScheduleClosed(SegmentationError, RuntimeError):
    """`advance` was called on a finished, cancelled or foreign schedule."""


class OutputNotReady(SegmentationError, RuntimeError):
    """A model output was read before its schedule completed."""


class TensorReleased(SegmentationError, RuntimeError):
    """A tensor was read after it had been released."""


class StaleEmbedding(SegmentationError, RuntimeError):
    """An encoded image was decoded after its embedding had been released."""


class GraphCompileFailure(SegmentationError, RuntimeError):
    """The graph executor could not build a runnable graph."""
