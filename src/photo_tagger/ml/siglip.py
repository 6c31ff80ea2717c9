"""Learned image embeddings from a local SigLIP checkpoint."""

from __future__ import annotations

import numpy as np
import torch
from PIL import Image
from transformers import AutoModel, AutoProcessor

from photo_tagger.errors import AcceleratorError
from photo_tagger.ml.devices import AcceleratorSession
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "embedding"})


class SiglipEmbedder:
    """Embed images with ``get_image_features`` of a SigLIP model.

    Checkpoints are loaded with ``local_files_only`` so an import never reaches
    the network; the model must already be in the Hugging Face cache or at a
    local path.
    """

    def __init__(self, session: AcceleratorSession, model_name: str) -> None:
        self._session = session
        self.scheme = model_name
        self._processor = AutoProcessor.from_pretrained(model_name, use_fast=True, local_files_only=True)
        model = AutoModel.from_pretrained(model_name, local_files_only=True)
        try:
            model = model.to(session.device)
        except RuntimeError as exc:
            session.fall_back_to_cpu(str(exc))
            model = model.to(session.device)
        model.eval()
        self._model = model
        self.dim = int(getattr(model.config, "projection_dim", 0) or model.config.vision_config.hidden_size)
        LOGGER.info("siglip_embedder_ready", extra={"model_name": model_name, "device": str(session.device)})

    def embed(self, image: Image.Image) -> np.ndarray:
        inputs = self._processor(images=[image.convert("RGB")], return_tensors="pt")
        with self._session.exclusive() as device:
            try:
                with torch.no_grad():
                    features = self._model.get_image_features(**inputs.to(device))
            except RuntimeError as exc:
                if device.type != "cpu":
                    raise AcceleratorError(f"siglip embedding failed on {device}: {exc}") from exc
                raise

        emb = features[0]
        emb = emb / emb.norm(dim=-1, keepdim=True).clamp_min(1e-6)
        return emb.detach().cpu().numpy().astype(np.float32)


__all__ = ["SiglipEmbedder"]
