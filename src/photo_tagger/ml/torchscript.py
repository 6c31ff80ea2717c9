"""TorchScript-backed inference engine for scene classification and subject detection.

Model contract:

- Scene model: takes a ``[1, 3, S, S]`` float tensor in ``[0, 1]`` and returns
  logits whose first ``len(scene_labels)`` entries map to ``scene_labels``.
- Detection model: takes the same input and returns an ``[N, 6]`` tensor of
  ``(x_min, y_min, x_max, y_max, score, class_index)`` rows with normalized
  coordinates; ``class_index`` indexes ``detection_labels``.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import numpy as np
import torch
from PIL import Image
from PIL.Image import Resampling
from torch import Tensor

from photo_tagger.errors import AcceleratorError
from photo_tagger.ml.detection import BoundingBox, Detection, non_max_suppression
from photo_tagger.ml.devices import AcceleratorSession
from photo_tagger.ml.engine import DETECTION_MODEL, SCENE_MODEL
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "inference"})


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


class TorchScriptEngine:
    """Runs TorchScript models through a shared :class:`AcceleratorSession`."""

    def __init__(
        self,
        session: AcceleratorSession,
        *,
        scene_model_path: Path | None,
        detection_model_path: Path | None,
        scene_labels: Sequence[str],
        detection_labels: Sequence[str],
        input_size: int = 224,
        score_threshold: float = 0.25,
        nms_iou_threshold: float = 0.5,
    ) -> None:
        self._session = session
        self._scene_labels = tuple(scene_labels)
        self._detection_labels = tuple(detection_labels)
        self._input_size = max(16, int(input_size))
        self._score_threshold = score_threshold
        self._nms_iou_threshold = nms_iou_threshold
        self._models: dict[str, torch.jit.ScriptModule] = {}

        for model_id, path in ((SCENE_MODEL, scene_model_path), (DETECTION_MODEL, detection_model_path)):
            if path is not None:
                self._models[model_id] = self._load(model_id, Path(path))

    @property
    def provider(self) -> str:
        return self._session.device.type

    def _load(self, model_id: str, path: Path) -> torch.jit.ScriptModule:
        try:
            model = torch.jit.load(str(path), map_location=self._session.device)
        except RuntimeError as exc:
            if not self._session.accelerated:
                raise
            self._session.fall_back_to_cpu(str(exc))
            for key, loaded in self._models.items():
                self._models[key] = loaded.to(self._session.device)
            model = torch.jit.load(str(path), map_location=self._session.device)

        model.eval()
        LOGGER.info(
            "inference_model_loaded",
            extra={"model_id": model_id, "path": str(path), "device": str(self._session.device)},
        )
        return model

    def _to_tensor(self, image: Image.Image) -> Tensor:
        size = self._input_size
        rgb = image.convert("RGB").resize((size, size), resample=Resampling.BILINEAR)
        array = np.asarray(rgb, dtype=np.float32) / 255.0
        return torch.from_numpy(array).permute(2, 0, 1).unsqueeze(0)

    def _run(self, model_id: str, image: Image.Image) -> Tensor | None:
        model = self._models.get(model_id)
        if model is None:
            return None

        batch = self._to_tensor(image)
        with self._session.exclusive() as device:
            try:
                with torch.inference_mode():
                    output = model(batch.to(device))
            except RuntimeError as exc:
                if device.type != "cpu":
                    raise AcceleratorError(f"{model_id} model failed on {device}: {exc}") from exc
                raise

        if isinstance(output, (tuple, list)):
            output = output[0]
        return output.detach().to("cpu").float()

    def classify(self, image: Image.Image, model_id: str = SCENE_MODEL) -> dict[str, float]:
        logits = self._run(model_id, image)
        if logits is None or not self._scene_labels:
            return {}

        flat = logits.flatten()[: len(self._scene_labels)]
        if flat.numel() == 0:
            return {}
        probs = torch.softmax(flat, dim=0)
        return {label: float(prob) for label, prob in zip(self._scene_labels, probs.tolist())}

    def detect(self, image: Image.Image, model_id: str = DETECTION_MODEL) -> List[Detection]:
        raw = self._run(model_id, image)
        if raw is None or raw.numel() == 0:
            return []

        detections: List[Detection] = []
        for x_min, y_min, x_max, y_max, score, class_index in raw.reshape(-1, 6).tolist():
            if score < self._score_threshold:
                continue
            index = int(class_index)
            if 0 <= index < len(self._detection_labels):
                label = self._detection_labels[index]
            else:
                label = f"class_{index}"
            bbox = BoundingBox(_clamp(x_min), _clamp(y_min), _clamp(x_max), _clamp(y_max))
            detections.append(Detection(bbox=bbox, label=label, score=float(score)))

        return non_max_suppression(detections, self._nms_iou_threshold)


__all__ = ["TorchScriptEngine"]
