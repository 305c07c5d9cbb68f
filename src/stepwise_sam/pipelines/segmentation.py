"""Orchestrator for the encoder -> prompt -> decoder -> mask pipeline.

Two entry points share one data flow:

- `segment_blocking` runs both models to completion on the calling thread.
- `segment_incremental` returns a single-use iterator that runs at most one
  step budget per `next()` call, yielding `Progress` in between and
  `Done(mask)` last, so a frame loop can interleave other work.

The pipeline owns every intermediate tensor and releases it as soon as its
consumer finishes, on every exit path including cancellation. It keeps
mutable per-call state on its models and must not be used from two callers
at once.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any

import numpy as np
from PIL import Image

from stepwise_sam.config import PipelineSettings
from stepwise_sam.errors import ScheduleClosed, StaleEmbedding
from stepwise_sam.models.model import Model, as_float32
from stepwise_sam.models.scheduler import ExecutionSchedule, Outcome
from stepwise_sam.postprocessing.rasterize import MaskRasterizer
from stepwise_sam.preprocessing.geometry import (
    map_annotation_to_model_space,
    resize_for_model,
    square_pad,
)
from stepwise_sam.preprocessing.prompts import PromptEncoder, PromptTensors
from stepwise_sam.runtime.executor import SupportsGraphExecution
from stepwise_sam.runtime.tensors import Tensor
from stepwise_sam.runtime.torch_graph import TorchGraphExecutor, load_torchscript_graph
from stepwise_sam.vision.image import image_to_tensor
from stepwise_sam.vision.types import Annotation, ResizeRatio, validate_annotation

LOG = logging.getLogger(__name__)

DECODER_EMBEDDING_INPUT = "image_embeddings"
DECODER_PROMPT_INPUTS = (
    "point_coords",
    "point_labels",
    "mask_input",
    "has_mask_input",
    "orig_im_size",
)


@dataclass(frozen=True)
class Progress:
    """Emitted between two step-budget slices."""

    stage: str
    steps_done: int
    total_steps: int


@dataclass(frozen=True)
class Done:
    """Last element of an incremental segmentation."""

    mask: np.ndarray


SegmentationEvent = Progress | Done


@dataclass(frozen=True)
class EncodedImage:
    """Image embedding plus the geometry needed to prompt it.

    The embedding is borrowed from the encoder and dies when the encoder runs
    again; decoding after that raises `StaleEmbedding`.
    """

    embedding: Tensor
    ratio: ResizeRatio
    image_size: tuple[int, int]

    def release(self) -> None:
        self.embedding.release()


def _encoder_preprocess(square: Image.Image, *, name: str, input_max: float) -> dict[str, Tensor]:
    return {name: image_to_tensor(square, name, input_max=input_max)}


def make_encoder(
    executor: SupportsGraphExecution,
    settings: PipelineSettings = PipelineSettings(),
) -> Model:
    """Encoder model: takes the padded square image, outputs the embedding."""
    preprocess = functools.partial(
        _encoder_preprocess, name=settings.encoder_input, input_max=settings.input_max
    )
    return Model(
        executor, name="encoder", preprocess=preprocess, step_divisor=settings.step_divisor
    )


def make_decoder(
    executor: SupportsGraphExecution,
    settings: PipelineSettings = PipelineSettings(),
) -> Model:
    """Decoder model: takes embedding + prompt tensors, outputs float32 mask scores."""
    return Model(
        executor, name="decoder", postprocess=as_float32, step_divisor=settings.step_divisor
    )


class IncrementalSegmentation(Iterator[SegmentationEvent]):
    """Single-use iterator over one incremental segmentation.

    Abandoning it half-way requires `cancel()` (or leaving its `with` block):
    that closes the open schedule and frees every tensor held so far.
    """

    def __init__(self, events: Iterator[SegmentationEvent]) -> None:
        self._events = events
        self.result: np.ndarray | None = None

    def __iter__(self) -> IncrementalSegmentation:
        return self

    def __next__(self) -> SegmentationEvent:
        event = next(self._events)
        if isinstance(event, Done):
            self.result = event.mask
        return event

    def cancel(self) -> None:
        self._events.close()

    close = cancel

    def run_to_completion(self) -> np.ndarray:
        """Drain the remaining slices and return the mask.

        Raises:
            ScheduleClosed: If the run was cancelled before it produced a mask.
        """
        for _ in self:
            pass
        if self.result is None:
            raise ScheduleClosed("incremental segmentation was cancelled before completion")
        return self.result

    def __enter__(self) -> IncrementalSegmentation:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cancel()


class InferencePipeline:
    """Prompt-guided segmentation with an image encoder and a mask decoder."""

    def __init__(
        self,
        encoder: Model,
        decoder: Model,
        *,
        settings: PipelineSettings = PipelineSettings(),
        prompt_encoder: PromptEncoder | None = None,
        rasterizer: MaskRasterizer | None = None,
    ) -> None:
        self.encoder = encoder
        self.decoder = decoder
        self.settings = settings
        self.prompt_encoder = prompt_encoder or PromptEncoder(settings.mask_input_size)
        self.rasterizer = rasterizer or MaskRasterizer(
            flip_vertical=settings.flip_vertical,
            workers=settings.raster_workers,
        )

    @classmethod
    def from_files(
        cls,
        encoder_path: Path,
        decoder_path: Path,
        settings: PipelineSettings = PipelineSettings(),
        *,
        torch_module: Any | None = None,
    ) -> InferencePipeline:
        """Build a Torch-backed pipeline from two TorchScript files.

        A sequential encoder is split into one step per child module; any
        other encoder, and the decoder, run as a single step.

        Raises:
            GraphCompileFailure: If either file cannot be loaded as a graph.
        """
        enc_graph = load_torchscript_graph(
            encoder_path,
            inputs=(settings.encoder_input,),
            outputs=(settings.encoder_output,),
            torch_module=torch_module,
        )
        dec_graph = load_torchscript_graph(
            decoder_path,
            inputs=(DECODER_EMBEDDING_INPUT, *DECODER_PROMPT_INPUTS),
            outputs=(settings.decoder_output,),
            split_children=False,
            torch_module=torch_module,
        )
        encoder = make_encoder(
            TorchGraphExecutor(enc_graph, settings.device, torch_module=torch_module), settings
        )
        decoder = make_decoder(
            TorchGraphExecutor(dec_graph, settings.device, torch_module=torch_module), settings
        )
        LOG.info(
            "Pipeline ready: encoder steps=%s budget=%s decoder steps=%s budget=%s",
            encoder.total_steps,
            encoder.step_budget,
            decoder.total_steps,
            decoder.step_budget,
        )
        return cls(encoder, decoder, settings=settings)

    # ------------------------------------------------------------------
    # Blocking API
    # ------------------------------------------------------------------

    def segment_blocking(self, img: Image.Image, annotation: Annotation) -> np.ndarray:
        """Segment the region selected by `annotation` on `img`.

        Returns:
            A (height, width) uint8 mask with 1 inside the selected region.

        Raises:
            PromptShapeMismatch: Before any model call, for a malformed point set.
        """
        validate_annotation(annotation)
        encoded = self.encode_image(img)
        try:
            return self.decode_mask(encoded, annotation)
        finally:
            encoded.release()
            self.encoder.release_outputs()

    def encode_image(self, img: Image.Image) -> EncodedImage:
        """Run the encoder to completion and return the embedding with its geometry."""
        t0 = perf_counter()
        square, ratio = self._model_input(img)
        try:
            outputs = self.encoder.predict_blocking(square)
        finally:
            square.close()
        LOG.info(
            "Encode: image=%sx%s ratio=(%.4f, %.4f) took=%.3fs",
            img.width,
            img.height,
            ratio.width,
            ratio.height,
            perf_counter() - t0,
        )
        return EncodedImage(
            embedding=outputs[self.settings.encoder_output],
            ratio=ratio,
            image_size=(img.width, img.height),
        )

    def decode_mask(self, encoded: EncodedImage, annotation: Annotation) -> np.ndarray:
        """Decode one prompt against an existing embedding.

        Raises:
            PromptShapeMismatch: For a malformed point set.
            StaleEmbedding: If the embedding was released (the encoder ran again).
        """
        validate_annotation(annotation)
        self._check_live(encoded)
        t0 = perf_counter()
        prompts = self._prompt_tensors(encoded, annotation)
        try:
            self.decoder.predict_blocking(self._decoder_inputs(encoded, prompts))
            mask = self._extract_mask(encoded)
        finally:
            self.decoder.release_outputs()
            prompts.release()
        LOG.info("Decode: prompt=%s took=%.3fs", type(annotation).__name__, perf_counter() - t0)
        return mask

    # ------------------------------------------------------------------
    # Incremental API
    # ------------------------------------------------------------------

    def segment_incremental(
        self, img: Image.Image, annotation: Annotation
    ) -> IncrementalSegmentation:
        """Start an incremental segmentation; nothing runs until the first `next()`.

        Raises:
            PromptShapeMismatch: Immediately, for a malformed point set.
        """
        validate_annotation(annotation)
        return IncrementalSegmentation(self._incremental_events(img, annotation))

    def _incremental_events(
        self, img: Image.Image, annotation: Annotation
    ) -> Iterator[SegmentationEvent]:
        t0 = perf_counter()
        encode: ExecutionSchedule | None = None
        decode: ExecutionSchedule | None = None
        prompts: PromptTensors | None = None
        try:
            square, ratio = self._model_input(img)
            try:
                encode = self.encoder.begin_incremental(square)
            finally:
                square.close()
            yield from self._drive(self.encoder, encode, "encode")

            encoded = EncodedImage(
                embedding=self.encoder.peek_output(self.settings.encoder_output),
                ratio=ratio,
                image_size=(img.width, img.height),
            )
            prompts = self._prompt_tensors(encoded, annotation)
            decode = self.decoder.begin_incremental(self._decoder_inputs(encoded, prompts))
            yield from self._drive(self.decoder, decode, "decode")
            mask = self._extract_mask(encoded)
        finally:
            # Only what this run opened, in reverse order: mask scores, prompts, embedding.
            if decode is not None:
                self.decoder.discard(decode)
            if prompts is not None:
                prompts.release()
            if encode is not None:
                self.encoder.discard(encode)
        LOG.info("Incremental segmentation done: took=%.3fs", perf_counter() - t0)
        yield Done(mask)

    @staticmethod
    def _drive(model: Model, schedule: ExecutionSchedule, stage: str) -> Iterator[Progress]:
        while model.advance(schedule) is Outcome.CONTINUING:
            yield Progress(
                stage=stage, steps_done=schedule.steps_done, total_steps=schedule.total_steps
            )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _model_input(self, img: Image.Image) -> tuple[Image.Image, ResizeRatio]:
        resized, ratio = resize_for_model(img, self.settings.model_long_side)
        try:
            return square_pad(resized), ratio
        finally:
            resized.close()

    def _prompt_tensors(self, encoded: EncodedImage, annotation: Annotation) -> PromptTensors:
        scaled = map_annotation_to_model_space(annotation, encoded.ratio)
        return self.prompt_encoder.encode(scaled, image_size=encoded.image_size)

    @staticmethod
    def _decoder_inputs(encoded: EncodedImage, prompts: PromptTensors) -> dict[str, Tensor]:
        return {DECODER_EMBEDDING_INPUT: encoded.embedding, **prompts.as_inputs()}

    @staticmethod
    def _check_live(encoded: EncodedImage) -> None:
        if encoded.embedding.released:
            raise StaleEmbedding("embedding was released; encode the image again")

    def _extract_mask(self, encoded: EncodedImage) -> np.ndarray:
        scores = self.decoder.peek_output(self.settings.decoder_output)
        width, height = encoded.image_size
        return self.rasterizer.rasterize(scores, width, height)

    def close(self) -> None:
        self.decoder.close()
        self.encoder.close()
