"""On-demand catalog operations: duplicate groups, similar photos and re-tagging.

The grouping and ranking queries read a snapshot of the stored hashes or
embeddings and may run while an import is active; photos still in flight are
simply not part of the result.
"""

from __future__ import annotations

from dataclasses import fields

from PIL import Image

from photo_tagger.config import Settings
from photo_tagger.duplicates import DuplicateGroup, group_duplicates
from photo_tagger.errors import EmbeddingMissing
from photo_tagger.metadata import PhotoMetadata
from photo_tagger.ml.engine import InferenceEngine
from photo_tagger.similarity import SimilarResult, rank_similar
from photo_tagger.store import CatalogStore
from photo_tagger.tagging import TagDecision, Tagger
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "catalog"})

_DEFAULT_SCHEME = "rgb_hist_16"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def find_duplicates(
    store: CatalogStore,
    threshold: int | None = None,
    settings: Settings | None = None,
) -> list[DuplicateGroup[int]]:
    """Group every hashed photo into near-duplicate sets.

    ``threshold`` defaults to the configured Hamming threshold and is clamped
    to ``0..max_threshold``.
    """

    config = (settings or Settings()).duplicates
    requested = config.hamming_threshold if threshold is None else threshold
    effective = _clamp(requested, 0, config.max_threshold)
    if effective != requested:
        LOGGER.info("duplicate_threshold_clamped", extra={"requested": requested, "effective": effective})

    return group_duplicates(
        store.load_hashes(),
        threshold=effective,
        bands=config.bands,
        probe_radius=config.probe_radius,
        min_group_size=config.min_group_size,
    )


def find_similar(
    store: CatalogStore,
    photo_id: int,
    limit: int | None = None,
    scheme: str | None = None,
    settings: Settings | None = None,
) -> list[SimilarResult[int]]:
    """Rank stored photos by embedding similarity to ``photo_id``.

    Raises:
        PhotoNotFound: ``photo_id`` is not in the catalog.
        EmbeddingMissing: the photo has no vector for ``scheme``.
    """

    settings = settings or Settings()
    config = settings.similarity
    top_k = _clamp(config.default_limit if limit is None else limit, 1, config.max_limit)
    scheme = scheme or _scheme_for(settings)

    store.get_photo(photo_id)
    query = store.get_embedding(photo_id, scheme)
    if query is None:
        raise EmbeddingMissing(f"photo {photo_id} has no {scheme} embedding")

    results = rank_similar(photo_id, query, store.load_embeddings(scheme), top_k)
    LOGGER.debug(
        "similar_ranked",
        extra={"photo_id": photo_id, "scheme": scheme, "limit": top_k, "results": len(results)},
    )
    return results


def _open_accelerator(device: str):
    from photo_tagger.ml.devices import AcceleratorSession

    return AcceleratorSession(device)


def _scheme_for(settings: Settings) -> str:
    embedding = settings.embedding
    if embedding.backend == "siglip":
        return embedding.model_name
    if embedding.backend == "histogram":
        return f"rgb_hist_{embedding.bins}"
    return _DEFAULT_SCHEME


def rerun_auto(
    store: CatalogStore,
    photo_id: int,
    engine: InferenceEngine | None = None,
    settings: Settings | None = None,
) -> list[TagDecision]:
    """Re-run automatic tagging for one photo from its stored preview.

    Manual and locked tags are kept. A photo without a preview, or one whose
    preview cannot be tagged, keeps its current tags and yields ``[]``.

    Raises:
        PhotoNotFound: ``photo_id`` is not in the catalog.
    """

    settings = settings or Settings()
    photo = store.get_photo(photo_id)
    if not photo.preview_path:
        LOGGER.info("rerun_auto_no_preview", extra={"photo_id": photo_id})
        return []

    if engine is None:
        from photo_tagger.pipeline import build_inference_engine

        engine = build_inference_engine(settings.tagging, _open_accelerator)
    tagger = Tagger.from_config(engine, settings.tagging)
    metadata = PhotoMetadata(**{item.name: getattr(photo, item.name) for item in fields(PhotoMetadata)})

    try:
        with Image.open(photo.preview_path) as image:
            decisions = tagger.tag(image.convert("RGB"), metadata, photo.file_name)
    except Exception as exc:
        LOGGER.warning(
            "rerun_auto_failed",
            extra={"photo_id": photo_id, "preview_path": photo.preview_path, "error": str(exc)},
        )
        return []

    store.replace_auto_tags(photo_id, decisions)
    LOGGER.info("rerun_auto_done", extra={"photo_id": photo_id, "tags": [decision.label for decision in decisions]})
    return decisions


__all__ = ["find_duplicates", "find_similar", "rerun_auto"]
