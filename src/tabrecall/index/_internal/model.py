"""ONNX sentence-embedding model: presets, download, tokenize, infer.

Tokenization and inference are separate calls so the engine can memoize
token ids per text independently of embeddings.

Pooling: mean over the attention mask of the last hidden state, then L2
normalization, which is what the bge/e5 families are trained for.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import structlog

from tabrecall.config.models import ModelConfig, ModelVersion
from tabrecall.core.errors import ConfigurationError, ResourceNotReadyError

log = structlog.get_logger()

# ===================================================================
# Presets
# ===================================================================


@dataclass(frozen=True, slots=True)
class ModelPreset:
    name: str
    repo_id: str
    dimension: int
    requires_token_type_ids: bool
    description: str = ""


MODEL_PRESETS: dict[str, ModelPreset] = {
    "bge-small-en-v1.5": ModelPreset(
        name="bge-small-en-v1.5",
        repo_id="Xenova/bge-small-en-v1.5",
        dimension=384,
        requires_token_type_ids=True,
        description="English, small and fast",
    ),
    "multilingual-e5-small": ModelPreset(
        name="multilingual-e5-small",
        repo_id="Xenova/multilingual-e5-small",
        dimension=384,
        requires_token_type_ids=False,
        description="100+ languages, small",
    ),
    "multilingual-e5-base": ModelPreset(
        name="multilingual-e5-base",
        repo_id="Xenova/multilingual-e5-base",
        dimension=768,
        requires_token_type_ids=False,
        description="100+ languages, higher recall, 2x slower",
    ),
}

DEFAULT_PRESET = "bge-small-en-v1.5"

ONNX_FILES: dict[str, str] = {
    "full": "onnx/model.onnx",
    "quantized": "onnx/model_quantized.onnx",
    "compressed": "onnx/model_fp16.onnx",
}


def resolve_preset(name: str) -> ModelPreset:
    """Look up a preset by name, or describe a local model directory."""
    if name in MODEL_PRESETS:
        return MODEL_PRESETS[name]
    path = Path(name).expanduser()
    if path.is_dir():
        config_file = path / "config.json"
        dimension = 0
        if config_file.exists():
            dimension = int(json.loads(config_file.read_text()).get("hidden_size", 0))
        return ModelPreset(
            name=str(path),
            repo_id=str(path),
            dimension=dimension,
            requires_token_type_ids=False,
            description="local model directory",
        )
    raise ConfigurationError.invalid_value(
        "model.preset", name, f"unknown preset; choose one of {sorted(MODEL_PRESETS)}"
    )


def preset_dimension(name: str) -> int:
    """Output dimension a model config will produce (0 if unknown)."""
    return resolve_preset(name).dimension


def fetch_model_files(preset: ModelPreset, version: ModelVersion, cache_dir: str | None) -> Path:
    """Return a directory holding tokenizer.json and the chosen ONNX file."""
    local = Path(preset.repo_id).expanduser()
    if local.is_dir():
        return local

    from huggingface_hub import snapshot_download

    onnx_file = ONNX_FILES[version]
    model_dir = snapshot_download(
        repo_id=preset.repo_id,
        allow_patterns=["tokenizer.json", "config.json", onnx_file],
        cache_dir=str(Path(cache_dir).expanduser()) if cache_dir else None,
    )
    return Path(model_dir)


def _detect_providers() -> list[str]:
    """Detect available ONNX Runtime execution providers."""
    import onnxruntime as ort

    available = set(ort.get_available_providers())
    providers: list[str] = []
    if "CUDAExecutionProvider" in available:
        providers.append("CUDAExecutionProvider")
    providers.append("CPUExecutionProvider")
    return providers


# ===================================================================
# Model
# ===================================================================


@dataclass(frozen=True, slots=True)
class TokenizedText:
    """Token ids for one text, unpadded."""

    ids: tuple[int, ...]
    attention_mask: tuple[int, ...]
    type_ids: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.ids)


class OnnxEmbeddingModel:
    """Tokenizer plus ONNX session. Not thread-safe; the engine serializes calls."""

    def __init__(
        self,
        preset: ModelPreset,
        tokenizer: Any,
        session: Any,
        *,
        max_length: int,
    ) -> None:
        self.preset = preset
        self.max_length = max_length
        self._tokenizer = tokenizer
        self._session = session
        self._input_names = {i.name for i in session.get_inputs()}
        self._pad_id = 0
        padding = tokenizer.padding
        if padding:
            self._pad_id = int(padding.get("pad_id", 0))
        tokenizer.no_padding()
        tokenizer.enable_truncation(max_length=max_length)

    @classmethod
    def load(cls, config: ModelConfig) -> OnnxEmbeddingModel:
        """Download (if needed) and load a model. Blocking; run off the event loop."""
        import onnxruntime as ort
        from tokenizers import Tokenizer

        preset = resolve_preset(config.preset)
        started = time.monotonic()
        try:
            model_dir = fetch_model_files(preset, config.version, config.cache_dir)
            onnx_path = model_dir / ONNX_FILES[config.version]
            if not onnx_path.exists():
                onnx_path = model_dir / ONNX_FILES["full"]
            tokenizer = Tokenizer.from_file(str(model_dir / "tokenizer.json"))

            options = ort.SessionOptions()
            options.intra_op_num_threads = config.resolved_threads()
            options.inter_op_num_threads = 1
            session = ort.InferenceSession(
                str(onnx_path),
                sess_options=options,
                providers=_detect_providers(),
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ResourceNotReadyError.load_failed(preset.name, str(e)) from e

        model = cls(preset, tokenizer, session, max_length=config.max_length)
        log.info(
            "embedding.model_loaded",
            model=preset.name,
            version=config.version,
            providers=session.get_providers(),
            threads=config.resolved_threads(),
            load_sec=round(time.monotonic() - started, 2),
        )
        return model

    @property
    def requires_token_type_ids(self) -> bool:
        return "token_type_ids" in self._input_names or self.preset.requires_token_type_ids

    def tokenize(self, text: str) -> TokenizedText:
        enc = self._tokenizer.encode(text)
        return TokenizedText(
            ids=tuple(enc.ids),
            attention_mask=tuple(enc.attention_mask),
            type_ids=tuple(enc.type_ids),
        )

    def embed_tokens(self, batch: list[TokenizedText]) -> np.ndarray[Any, np.dtype[np.float32]]:
        """Run the model on pre-tokenized texts. Returns (n, dim) L2-normalized rows."""
        width = max(len(t) for t in batch)
        ids = np.full((len(batch), width), self._pad_id, dtype=np.int64)
        mask = np.zeros((len(batch), width), dtype=np.int64)
        types = np.zeros((len(batch), width), dtype=np.int64)
        for row, tok in enumerate(batch):
            n = len(tok)
            ids[row, :n] = tok.ids
            mask[row, :n] = tok.attention_mask
            types[row, :n] = tok.type_ids

        feeds: dict[str, np.ndarray[Any, Any]] = {"input_ids": ids, "attention_mask": mask}
        if self.requires_token_type_ids:
            feeds["token_type_ids"] = types
        feeds = {k: v for k, v in feeds.items() if k in self._input_names}

        hidden = self._session.run(None, feeds)[0]
        return mean_pool(np.asarray(hidden, dtype=np.float32), mask)


def mean_pool(
    hidden: np.ndarray[Any, Any], attention_mask: np.ndarray[Any, Any]
) -> np.ndarray[Any, np.dtype[np.float32]]:
    """Masked mean over the sequence axis, then L2-normalize each row."""
    weights = attention_mask[..., None].astype(np.float32)
    summed = (hidden * weights).sum(axis=1)
    counts = np.clip(weights.sum(axis=1), 1e-9, None)
    pooled = summed / counts
    norms = np.linalg.norm(pooled, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (pooled / norms).astype(np.float32)
