from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import torch
from PIL import Image

from photo_tagger.accel import CpuKernel, TorchKernel
from photo_tagger.config import TaggingConfig
from photo_tagger.errors import MissingDependencyError
from photo_tagger.ml import devices
from photo_tagger.ml.devices import AcceleratorSession, select_device
from photo_tagger.ml.engine import NullEngine
from photo_tagger.ml.torchscript import TorchScriptEngine
from photo_tagger.pipeline import build_inference_engine


class _FixedScene(torch.nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.register_buffer("logits", torch.tensor([2.0, 0.0, 0.0, 5.0]))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.logits.unsqueeze(0) + x.sum() * 0.0


class _FixedDetector(torch.nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.register_buffer(
            "rows",
            torch.tensor(
                [
                    [0.3, 0.3, 0.7, 0.7, 0.9, 0.0],
                    [0.32, 0.3, 0.72, 0.7, 0.8, 0.0],
                    [0.0, 0.0, 0.1, 0.1, 0.1, 0.0],
                    [0.1, 0.1, 0.2, 0.2, 0.6, 3.0],
                ]
            ),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.rows + x.sum() * 0.0


def _save(module: torch.nn.Module, path: Path) -> Path:
    torch.jit.save(torch.jit.script(module), str(path))
    return path


def test_explicit_unavailable_accelerator_falls_back_to_cpu(monkeypatch) -> None:
    monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
    monkeypatch.setattr(devices, "_mps_available", lambda: False)

    assert select_device("cuda").type == "cpu"
    assert select_device("auto").type == "cpu"

    session = AcceleratorSession("mps")
    assert session.explicit
    assert not session.accelerated
    assert not AcceleratorSession("auto").explicit


def test_torchscript_engine_classifies_and_detects(tmp_path: Path) -> None:
    engine = TorchScriptEngine(
        AcceleratorSession("cpu"),
        scene_model_path=_save(_FixedScene(), tmp_path / "scene.pt"),
        detection_model_path=_save(_FixedDetector(), tmp_path / "detect.pt"),
        scene_labels=("street", "landscape", "nature"),
        detection_labels=("face",),
        input_size=32,
    )
    image = Image.new("RGB", (80, 60), "white")

    scores = engine.classify(image)
    detections = engine.detect(image)

    assert engine.provider == "cpu"
    assert set(scores) == {"street", "landscape", "nature"}
    assert sum(scores.values()) == pytest.approx(1.0)
    assert max(scores, key=scores.get) == "street"
    assert [(det.label, round(det.score, 2)) for det in detections] == [("face", 0.9), ("class_3", 0.6)]


def test_engine_without_detector_returns_no_detections(tmp_path: Path) -> None:
    engine = TorchScriptEngine(
        AcceleratorSession("cpu"),
        scene_model_path=_save(_FixedScene(), tmp_path / "scene.pt"),
        detection_model_path=None,
        scene_labels=("street",),
        detection_labels=(),
    )

    assert engine.detect(Image.new("RGB", (16, 16))) == []
    assert engine.classify(Image.new("RGB", (16, 16))) == {"street": 1.0}


def test_build_inference_engine_validates_model_files(tmp_path: Path) -> None:
    def _session(requested: str) -> AcceleratorSession:
        return AcceleratorSession("cpu")

    assert isinstance(build_inference_engine(TaggingConfig(), _session), NullEngine)
    with pytest.raises(MissingDependencyError):
        build_inference_engine(TaggingConfig(scene_model_path=tmp_path / "missing.pt"), _session)

    config = TaggingConfig(scene_model_path=_save(_FixedScene(), tmp_path / "scene.pt"))
    assert isinstance(build_inference_engine(config, _session), TorchScriptEngine)


def test_torch_kernel_matches_cpu_histogram_and_size() -> None:
    rng = np.random.default_rng(5)
    image = Image.fromarray(rng.integers(0, 256, size=(90, 120, 3), dtype=np.uint8))
    kernel = TorchKernel(AcceleratorSession("cpu"))

    np.testing.assert_array_equal(kernel.histogram(image, 16), CpuKernel().histogram(image, 16))
    assert kernel.resize(image, 60).size == (60, 45)
