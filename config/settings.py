from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root: two levels up from this file (config/settings.py)
ROOT_DIR: Path = Path(__file__).resolve().parent.parent


class EmbeddingSettings(BaseSettings):
    """Default face embedding model assigned to every account."""

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_", extra="ignore")

    # Model version tag stored on every face
    model_name: str = Field(
        default="buffalo_l",
        description="Embedding model version tag stored with each face.",
    )
    # Embedding vector dimension (ArcFace = 512)
    dim: int = Field(
        default=512,
        ge=1,
        description="Dimensionality of the face embedding vector.",
    )


class IndexSettings(BaseSettings):
    """Embedding index settings."""

    model_config = SettingsConfigDict(env_prefix="INDEX_", extra="ignore")

    # Partition size above which the flat scan is swapped for the matrix backend
    matrix_threshold: int = Field(
        default=2048,
        ge=1,
        description="Entries per account before switching to the vectorised matrix backend.",
    )


class IdentifySettings(BaseSettings):
    """Identification (read-only matching) settings."""

    model_config = SettingsConfigDict(env_prefix="IDENTIFY_", extra="ignore")

    k: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Nearest neighbours fetched per detected face.",
    )
    min_similarity: float = Field(
        default=0.45,
        ge=-1.0,
        le=1.0,
        description="Minimum cosine similarity for a candidate person.",
    )
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Maximum accepted image upload size in bytes.",
    )


class ClusteringSettings(BaseSettings):
    """Person clustering and lifecycle policy."""

    model_config = SettingsConfigDict(env_prefix="CLUSTERING_", extra="ignore")

    # Similarity needed to attach a new face to an existing person
    min_similarity: float = Field(
        default=0.55,
        ge=-1.0,
        le=1.0,
        description="Cosine similarity required to join an existing person.",
    )
    k: int = Field(
        default=20,
        ge=1,
        description="Neighbours inspected when recognizing a face.",
    )
    person_gc: Literal["eager", "lazy"] = Field(
        default="eager",
        description=(
            "'eager' deletes empty unnamed people immediately; "
            "'lazy' keeps them until collect_garbage() runs."
        ),
    )
    orphan_guard: Literal["named", "any"] = Field(
        default="named",
        description=(
            "Which people block a non-forced delete of their last face: "
            "'named' people only, or 'any' person."
        ),
    )


class CoordinatorSettings(BaseSettings):
    """Per-person lock settings."""

    model_config = SettingsConfigDict(env_prefix="COORDINATOR_", extra="ignore")

    lock_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Seconds to wait for person/face locks before giving up.",
    )
    max_retries: int = Field(
        default=8,
        ge=1,
        description="Re-reads allowed when a face moves while its locks are taken.",
    )


class AnalyzerSettings(BaseSettings):
    """InsightFace detector + embedder settings."""

    model_config = SettingsConfigDict(env_prefix="ANALYZER_", extra="ignore")

    # InsightFace model pack name
    model_pack: str = Field(
        default="buffalo_l",
        description="InsightFace model pack name (e.g. buffalo_l, buffalo_s).",
    )
    # Directory where InsightFace stores downloaded models
    model_root: str = Field(
        default="models",
        description="Root directory for InsightFace model downloads.",
    )
    det_size: tuple[int, int] = Field(
        default=(640, 640),
        description="Detection input resolution for InsightFace analyser.",
    )
    det_score_thresh: float = Field(
        default=0.5,
        ge=0.01,
        le=1.0,
        description="Minimum detection confidence for a face observation.",
    )
    # Execution providers for InsightFace ONNX models
    providers: List[str] = Field(
        default=["CUDAExecutionProvider", "CPUExecutionProvider"],
        description="ONNX Runtime execution providers in priority order.",
    )
    ctx_id: int = Field(default=0, description="GPU index for InsightFace; -1 = CPU.")
    enabled: bool = Field(
        default=True,
        description="Load the analyzer at API startup.",
    )


class BreakerSettings(BaseSettings):
    """Circuit breaker around model invocation."""

    model_config = SettingsConfigDict(env_prefix="BREAKER_", extra="ignore")

    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout: float = Field(default=30.0, gt=0.0)


class APISettings(BaseSettings):
    """FastAPI server settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(default="0.0.0.0", description="API server bind host.")
    port: int = Field(default=8000, ge=1, le=65535, description="API server port.")
    workers: int = Field(default=1, ge=1, description="Number of Uvicorn worker processes.")
    debug: bool = Field(default=False, description="Enable debug mode.")

    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins.",
    )

    api_prefix: str = Field(default="/api/v1", description="URL prefix for all API routes.")

    # "key:account" pairs; empty = trust the X-Account-ID header (development)
    api_keys: List[str] = Field(
        default_factory=list,
        description="Accepted 'key:account_id' pairs for the X-API-Key header.",
    )


class StorageSettings(BaseSettings):
    """Catalog snapshot settings."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    snapshot_path: Optional[Path] = Field(
        default=ROOT_DIR / "cache" / "catalog.pkl",
        description="Pickle snapshot loaded on startup and saved on shutdown. Null disables.",
    )

    @field_validator("snapshot_path", mode="before")
    @classmethod
    def empty_is_none(cls, v):
        if v in ("", None):
            return None
        return Path(v)


class LoggingSettings(BaseSettings):
    """Logging settings (Loguru-based)."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level to emit.",
    )
    # Log file path (None = stdout only)
    file_path: Optional[Path] = Field(
        default=ROOT_DIR / "logs" / "app.log",
        description="Path to log file. Set to null/empty to disable file logging.",
    )
    rotation: str = Field(default="10 MB", description="Loguru rotation threshold.")
    retention: str = Field(default="7 days", description="How long to retain rotated log files.")
    json_logs: bool = Field(
        default=False,
        description="Emit logs as JSON objects (for log aggregation pipelines).",
    )


class Settings(BaseSettings):
    """
    Master settings object.

    Priority (highest → lowest):
      1. Environment variables  (e.g. IDENTIFY_MIN_SIMILARITY=0.5)
      2. .env file              (loaded from project root)
      3. Default values below
    """

    model_config = SettingsConfigDict(
        env_file=str(ROOT_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    app_name: str = Field(default="Face Catalog", description="Application name.")
    app_version: str = Field(default="1.0.0", description="Application version string.")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment.",
    )

    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    identify: IdentifySettings = Field(default_factory=IdentifySettings)
    clustering: ClusteringSettings = Field(default_factory=ClusteringSettings)
    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)
    analyzer: AnalyzerSettings = Field(default_factory=AnalyzerSettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    api: APISettings = Field(default_factory=APISettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


settings = Settings()
