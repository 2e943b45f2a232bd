"""Data model shared by the pipeline, the catalog store and the HTTP layer."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class CatalogEntry(BaseModel):
    """One cataloged video. `source_path` is unique across entries."""
    id: Optional[int] = None
    title: str = Field(..., min_length=1)
    source_path: str
    file_size: int = 0
    format: Optional[str] = None
    resolution: Optional[str] = None
    duration: float = 0.0  # 0 means unknown, resolved client-side
    description: Optional[str] = None
    genre: Optional[str] = None
    release_year: Optional[int] = None
    rating: Optional[float] = Field(None, ge=0, le=10)
    director: Optional[str] = None
    cast: Optional[str] = None
    runtime: Optional[str] = None
    content_rating: Optional[str] = None
    country: Optional[str] = None
    language: Optional[str] = None
    awards: Optional[str] = None
    thumbnail: Optional[str] = None
    poster_url: Optional[str] = None
    external_id: Optional[str] = None
    external_rating: Optional[float] = None
    last_enriched: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "CatalogEntry":
        return cls(**{k: row[k] for k in row.keys() if k in cls.model_fields})


class CompatibilityVerdict(BaseModel):
    file_name: str
    format: str
    is_compatible: bool
    needs_conversion: bool
    recommendation: str


class VideoMetadata(BaseModel):
    duration: float = 0.0
    file_size: int = 0
    format: str = "unknown"
    resolution: Optional[str] = None


class EnrichmentResult(BaseModel):
    """Normalized provider answer; fields the provider does not know are None."""
    title: str
    year: Optional[int] = None
    genre: Optional[str] = None
    director: Optional[str] = None
    cast: Optional[str] = None
    plot: Optional[str] = None
    poster_url: Optional[str] = None
    rating: Optional[float] = None
    external_id: Optional[str] = None
    runtime: Optional[str] = None
    content_rating: Optional[str] = None
    country: Optional[str] = None
    language: Optional[str] = None
    awards: Optional[str] = None


class FileOutcome(BaseModel):
    file_name: str
    title: Optional[str] = None
    status: str  # added | skipped | failed
    error: Optional[str] = None


class IncompatibleFile(BaseModel):
    file_name: str
    format: str
    recommendation: str
    file_size_mb: int


class NeedsConversion(BaseModel):
    needs_conversion: bool = True
    message: str
    folder_path: str
    total_files: int
    compatible_files: int
    incompatible_files: list[IncompatibleFile]


class ScanResult(BaseModel):
    needs_conversion: bool = False
    message: str = ""
    folder_path: str
    total_files: int = 0
    processed_files: int = 0
    compatible_files: int = 0
    incompatible_files: int = 0
    added_movies: int = 0
    skipped_movies: int = 0
    skipped_incompatible: int = 0
    failed_files: int = 0
    results: list[FileOutcome] = Field(default_factory=list)
    supported_extensions: list[str] = Field(default_factory=list)


class ConvertedFile(BaseModel):
    original: str
    converted: str
    title: str
    added: bool
    original_deleted: bool


class FailedFile(BaseModel):
    file_name: str
    error: str


class ConvertResult(BaseModel):
    converted: list[ConvertedFile] = Field(default_factory=list)
    failed: list[FailedFile] = Field(default_factory=list)
    added_count: int = 0


class RefreshResult(BaseModel):
    updated: int = 0
    errors: int = 0
    total: int = 0
