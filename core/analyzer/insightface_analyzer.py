# InsightFace-based face analyzer.
#
# Uses the InsightFace FaceAnalysis pipeline (buffalo_l model pack)
# to detect faces and extract 512-dimensional ArcFace embeddings in
# a single pass over the decoded image.
#
# Key design decisions:
#   - Thread-safe model loading (threading.Lock)
#   - Automatic ONNX execution provider selection
#   - Boxes are clipped to the image so they always validate
#     against the asset dimensions

from __future__ import annotations

import threading
from typing import List, Optional, Tuple

import numpy as np
from loguru import logger

from core.analyzer.base_analyzer import (
    AnalysisResult,
    BaseAnalyzer,
    FaceObservation,
    bbox_from_array,
)
from core.catalog.errors import InvalidImage
from utils.image_utils import decode_image, image_size


class InsightFaceAnalyzer(BaseAnalyzer):
    """
    InsightFace RetinaFace + ArcFace analyzer.

    Quick usage::

        analyzer = InsightFaceAnalyzer(model_pack="buffalo_l")
        analyzer.load_model()
        observations = analyzer.detect_and_embed(image_bytes)
    """

    def __init__(
        self,
        model_pack: str = "buffalo_l",
        model_root: str = "models",
        embedding_dim: int = 512,
        providers: Optional[List[str]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_score_thresh: float = 0.5,
        ctx_id: int = 0,
    ) -> None:
        """
        Args:
            model_pack:       InsightFace model pack name
                              ('buffalo_l' | 'buffalo_m' | 'buffalo_s').
            model_root:       Root directory for InsightFace downloads.
            embedding_dim:    Expected embedding size (512 for buffalo_l).
            providers:        ONNX Runtime execution providers in
                              priority order.  Default: CUDA → CPU.
            det_size:         (width, height) detector input resolution.
            det_score_thresh: Minimum detection confidence.
            ctx_id:           GPU device index; -1 = CPU.
        """
        super().__init__(model_name=model_pack, embedding_dim=embedding_dim)
        self.model_pack = model_pack
        self.model_root = model_root
        self.providers = providers or ["CUDAExecutionProvider", "CPUExecutionProvider"]
        self.det_size = tuple(det_size)
        self.det_score_thresh = float(det_score_thresh)
        self.ctx_id = ctx_id

        self._load_lock = threading.Lock()
        self._app = None           # insightface.app.FaceAnalysis instance

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------

    def load_model(self) -> None:
        """
        Load the InsightFace FaceAnalysis model pack.

        Downloads the pack on first use if it is not in ``model_root``.

        Raises:
            RuntimeError: If insightface is not installed or loading fails.
        """
        with self._load_lock:
            if self._is_loaded:
                logger.debug(f"{self.__class__.__name__} already loaded - skipping.")
                return

            logger.info(
                f"Loading InsightFace analyzer | pack={self.model_pack} | "
                f"root={self.model_root} | providers={self.providers}"
            )
            t0 = self._timer()

            try:
                import onnxruntime as ort  # noqa: PLC0415
                from insightface.app import FaceAnalysis  # noqa: PLC0415
            except ImportError as exc:
                raise RuntimeError(
                    "insightface / onnxruntime are not installed. "
                    "Run: pip install 'face-catalog[models]'"
                ) from exc

            providers = self._resolve_providers(ort.get_available_providers())
            try:
                self._app = FaceAnalysis(
                    name=self.model_pack,
                    root=str(self.model_root),
                    providers=providers,
                )
                self._app.prepare(
                    ctx_id=self._resolve_ctx_id(providers),
                    det_size=self.det_size,
                    det_thresh=self.det_score_thresh,
                )
            except Exception as exc:
                raise RuntimeError(
                    f"Failed to load InsightFace model pack '{self.model_pack}': {exc}"
                ) from exc

            self._model = self._app
            self._is_loaded = True

            elapsed = self._timer() - t0
            logger.success(
                f"InsightFace analyzer ready in {elapsed:.0f} ms | pack={self.model_pack}"
            )

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def analyze(self, image_bytes: bytes) -> AnalysisResult:
        self._require_loaded()
        try:
            image = decode_image(image_bytes)
        except ValueError as exc:
            raise InvalidImage(str(exc)) from exc

        size = image_size(image)
        t0 = self._timer()
        faces = self._app.get(image)

        observations: List[FaceObservation] = []
        for face in sorted(faces or [], key=lambda f: float(f.det_score), reverse=True):
            obs = self._face_to_observation(face, size)
            if obs is not None:
                observations.append(obs)

        elapsed = self._timer() - t0
        logger.debug(f"InsightFace found {len(observations)} face(s) in {elapsed:.0f} ms")
        return AnalysisResult(
            observations=observations,
            image_width=size[0],
            image_height=size[1],
            inference_time_ms=elapsed,
        )

    def _face_to_observation(self, face, size: Tuple[int, int]) -> Optional[FaceObservation]:
        """
        Convert an InsightFace ``Face`` object into a FaceObservation.

        InsightFace ``Face`` attributes we use:
            face.normed_embedding  - L2-normalised 512-dim vector
            face.embedding         - raw (un-normalised) embedding
            face.bbox              - (x1, y1, x2, y2) float array
            face.det_score         - detection confidence
        """
        raw_emb = getattr(face, "normed_embedding", None)
        if raw_emb is None:
            raw_emb = getattr(face, "embedding", None)
        if raw_emb is None:
            logger.debug("InsightFace Face object has no embedding.")
            return None

        vec = np.asarray(raw_emb, dtype=np.float32).reshape(-1)
        if float(np.linalg.norm(vec)) < 1e-10:
            logger.warning("Embedding norm near zero - degenerate extraction.")
            return None

        bbox = bbox_from_array(face.bbox, image_size=size)
        if bbox.width <= 0 or bbox.height <= 0:
            logger.debug(f"Dropping face with degenerate box {bbox.as_tuple()}")
            return None

        return FaceObservation(bbox=bbox, embedding=vec, score=float(face.det_score))

    # ------------------------------------------------------------------
    # Resource management
    # ------------------------------------------------------------------

    def release(self) -> None:
        self._app = None
        super().release()
        logger.info("InsightFaceAnalyzer released.")

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info.update({
            "model_root":       str(self.model_root),
            "det_size":         self.det_size,
            "det_score_thresh": self.det_score_thresh,
            "providers":        self.providers,
            "ctx_id":           self.ctx_id,
        })
        return info

    def _resolve_providers(self, available: List[str]) -> List[str]:
        """Configured providers that ONNX Runtime offers, else CPU only."""
        resolved = [p for p in self.providers if p in available]
        if not resolved:
            resolved = ["CPUExecutionProvider"]
        logger.debug(f"ONNX providers resolved: {resolved}")
        return resolved

    def _resolve_ctx_id(self, providers: List[str]) -> int:
        """GPU index when CUDA is among *providers*, -1 (CPU) otherwise."""
        if "CUDAExecutionProvider" not in providers:
            return -1
        return max(self.ctx_id, 0)

    def __repr__(self) -> str:
        status = "loaded" if self._is_loaded else "not loaded"
        return (
            f"InsightFaceAnalyzer(pack={self.model_pack!r}, "
            f"det_size={self.det_size}, status={status})"
        )
