"""
Configuration for the image search service

Defaults are merged with an optional YAML file; every component receives the
relevant section through its constructor.
"""

import copy
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigurationError

SUPPORTED_BACKENDS = ("numpy", "faiss")


@dataclass
class PathsConfig:
    """Filesystem layout"""
    images_dir: str = "imagens_temp"
    model_dir: Optional[str] = None  # defaults to <images_dir>/model
    model_file: str = "clip-ViT-B-32-vision.onnx"
    index_file: str = "clip-ViT-B-32-vision.json"
    query_dir_name: str = "query"

    @property
    def images_path(self) -> Path:
        return Path(self.images_dir)

    @property
    def model_path(self) -> Path:
        if self.model_dir:
            return Path(self.model_dir)
        return self.images_path / "model"

    @property
    def model_file_path(self) -> Path:
        return self.model_path / self.model_file

    @property
    def index_file_path(self) -> Path:
        return self.model_path / self.index_file

    @property
    def query_path(self) -> Path:
        return self.images_path / self.query_dir_name


@dataclass
class PreprocessingConfig:
    """Image-to-tensor settings (CLIP normalization)"""
    target_size: int = 224
    mean: List[float] = field(default_factory=lambda: [0.48145466, 0.4578275, 0.40821073])
    std: List[float] = field(default_factory=lambda: [0.26862954, 0.26130258, 0.27577711])


@dataclass
class ModelConfig:
    """Inference engine settings"""
    input_name: str = "pixel_values"
    output_name: str = "image_embeds"
    embedding_dim: int = 512
    providers: List[str] = field(default_factory=lambda: ["CPUExecutionProvider"])
    strict_output_name: bool = False
    inference_timeout_seconds: Optional[float] = 30.0


@dataclass
class SearchConfig:
    """Ranking policy"""
    similarity_threshold: float = 0.8
    top_k: int = 10
    backend: str = "numpy"  # Options: numpy, faiss


@dataclass
class BuildConfig:
    """Index build sweep"""
    supported_extensions: List[str] = field(default_factory=lambda: [
        ".jpg", ".jpeg", ".png", ".bmp", ".gif", ".tiff", ".webp"
    ])
    progress_every: int = 25
    build_if_missing: bool = True


@dataclass
class ApiConfig:
    """HTTP server settings"""
    host: str = "0.0.0.0"
    port: int = 8000
    max_upload_mb: int = 50
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class AppConfig:
    """Top-level configuration"""
    log_level: str = "INFO"
    paths: PathsConfig = field(default_factory=PathsConfig)
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, indent=2, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AppConfig':
        """Build a config from a (possibly partial) dictionary"""
        merged = _merge_config(cls().to_dict(), data or {})
        config = cls(
            log_level=merged['log_level'],
            paths=PathsConfig(**_known(PathsConfig, merged['paths'])),
            preprocessing=PreprocessingConfig(**_known(PreprocessingConfig, merged['preprocessing'])),
            model=ModelConfig(**_known(ModelConfig, merged['model'])),
            search=SearchConfig(**_known(SearchConfig, merged['search'])),
            build=BuildConfig(**_known(BuildConfig, merged['build'])),
            api=ApiConfig(**_known(ApiConfig, merged['api'])),
        )
        config.validate()
        return config

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'AppConfig':
        """Load configuration from YAML file, falling back to defaults"""
        config_file = Path(path)
        if not config_file.exists():
            return cls.from_dict({})

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read configuration {config_file}: {e}") from e

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Configuration {config_file} must be a mapping")
        return cls.from_dict(file_config)

    def validate(self):
        """Reject settings the pipeline cannot run with"""
        pre = self.preprocessing
        if pre.target_size <= 0:
            raise ConfigurationError("preprocessing.target_size must be positive")
        if len(pre.mean) != 3 or len(pre.std) != 3:
            raise ConfigurationError("preprocessing.mean and preprocessing.std need three values each")
        if any(s <= 0 for s in pre.std):
            raise ConfigurationError("preprocessing.std values must be positive")

        if self.model.embedding_dim <= 0:
            raise ConfigurationError("model.embedding_dim must be positive")
        timeout = self.model.inference_timeout_seconds
        if timeout is not None and timeout <= 0:
            raise ConfigurationError("model.inference_timeout_seconds must be positive or null")

        if not -1.0 <= self.search.similarity_threshold <= 1.0:
            raise ConfigurationError("search.similarity_threshold must lie in [-1, 1]")
        if self.search.top_k < 1:
            raise ConfigurationError("search.top_k must be at least 1")
        if self.search.backend.lower() not in SUPPORTED_BACKENDS:
            raise ConfigurationError(f"Unsupported search backend: {self.search.backend}")

        if self.build.progress_every < 1:
            raise ConfigurationError("build.progress_every must be at least 1")
        self.build.supported_extensions = [
            ext.lower() if ext.startswith('.') else f".{ext.lower()}"
            for ext in self.build.supported_extensions
        ]


def _merge_config(default: Dict[str, Any], file_config: Dict[str, Any]) -> Dict[str, Any]:
    """Merge the file configuration over the defaults"""
    merged = copy.deepcopy(default)
    for key, value in file_config.items():
        if key in merged and isinstance(merged[key], dict) and value is None:
            continue
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def _known(section_cls, values: Any) -> Dict[str, Any]:
    if not isinstance(values, dict):
        raise ConfigurationError(f"Section for {section_cls.__name__} must be a mapping")
    names = section_cls.__dataclass_fields__.keys()
    return {k: v for k, v in values.items() if k in names}
