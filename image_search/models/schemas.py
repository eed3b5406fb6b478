"""
Pydantic models for the persisted index, search results and API responses
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ImageRecord(BaseModel):
    """One indexed image"""
    path: str = Field(..., description="Path of the source image, unique within an index")
    embedding: List[float] = Field(..., description="Unit-norm embedding vector")

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        if not v:
            raise ValueError("path must not be empty")
        return v


class IndexDocument(BaseModel):
    """Persisted index file"""
    generation: int = Field(0, ge=0, description="Incremented on every published build")
    dimension: Optional[int] = Field(None, description="Embedding length shared by all items")
    created_at: Optional[str] = Field(None, description="ISO timestamp of the build")
    items: List[ImageRecord] = Field(default_factory=list)


class MatchResult(BaseModel):
    """Single ranked match"""
    path: str
    similarity: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity")


class SearchStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    EMPTY_INDEX = "empty_index"
    NO_INDEX = "no_index"


class SearchOutcome(BaseModel):
    """Result of one query; failures are raised, never encoded here"""
    status: SearchStatus
    matches: List[MatchResult] = Field(default_factory=list)
    generation: Optional[int] = Field(None, description="Generation of the index that was searched")
    index_size: int = 0

    @property
    def found(self) -> bool:
        return self.status == SearchStatus.MATCHED


class BuildStatus(str, Enum):
    WRITTEN = "written"
    NO_CANDIDATES = "no_candidates"
    SOURCE_MISSING = "source_missing"
    CANCELLED = "cancelled"


class BuildFailure(BaseModel):
    """An image dropped from the index during a build"""
    path: str
    error_type: str
    message: str


class BuildReport(BaseModel):
    """Summary of one build sweep"""
    status: BuildStatus
    source_dir: str
    index_path: str
    candidates: int = 0
    indexed: int = 0
    failures: List[BuildFailure] = Field(default_factory=list)
    generation: Optional[int] = None
    duration_seconds: float = 0.0


class ImageData(BaseModel):
    """Matched image returned to API callers"""
    name: str = Field(..., description="File name")
    type: str = Field(..., description="MIME type derived from the extension")
    image: str = Field(..., description="Base64 encoded file content")
    path: str
    similarity: float


class IndexStats(BaseModel):
    """Persisted index summary"""
    exists: bool
    index_path: str
    generation: Optional[int] = None
    total_images: int = 0
    dimension: Optional[int] = None
    created_at: Optional[str] = None
    index_size_mb: float = 0.0


class HealthResponse(BaseModel):
    """API health check response"""
    status: str = Field(..., description="API status")
    version: str = Field(..., description="API version")
    model_available: bool = Field(..., description="Whether the encoder model file exists")
    model_loaded: bool = Field(..., description="Whether the inference session is loaded")
    index_exists: bool = Field(..., description="Whether a persisted index exists")
    total_images: int = Field(..., description="Images in the persisted index")
    uptime_seconds: float = Field(..., description="API uptime in seconds")
