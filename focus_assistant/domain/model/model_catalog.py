from typing import Dict, Optional
from pathlib import Path
import re

from focus_assistant.domain.models.model_state import ModelDescriptor

MODEL_FILE_SUFFIX = ".gguf"

# Known models, keyed by file name
CATALOG: Dict[str, Dict[str, str]] = {
    "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf": {
        "name": "TinyLlama 1.1B (Q4_K_M)",
        "description": "Smallest model, fastest inference. Good for basic tasks.",
        "parameter_count": "1.1B",
        "quantization": "Q4_K_M",
    },
    "phi-2.Q4_K_M.gguf": {
        "name": "Phi-2 2.7B (Q4_K_M)",
        "description": "Efficient model with a good balance of size and capability.",
        "parameter_count": "2.7B",
        "quantization": "Q4_K_M",
    },
    "Llama-3.2-1B-Instruct-Q4_K_M.gguf": {
        "name": "Llama 3.2 1B (Q4_K_M)",
        "description": "Small instruction model optimized for mobile.",
        "parameter_count": "1B",
        "quantization": "Q4_K_M",
    },
    "Llama-3.2-3B-Instruct-Q4_K_M.gguf": {
        "name": "Llama 3.2 3B (Q4_K_M)",
        "description": "Best quality for on-device inference.",
        "parameter_count": "3B",
        "quantization": "Q4_K_M",
    },
}

QUANTIZATION_PATTERN = re.compile(r"(?<![A-Za-z0-9])(I?Q\d(?:_[A-Z0-9]+)*|F16|F32|BF16)(?![A-Za-z0-9])", re.IGNORECASE)
PARAMETER_PATTERN = re.compile(r"(?<![\d.])(\d+(?:\.\d+)?)\s*[bB](?![a-zA-Z])")


def _infer_quantization(stem: str) -> Optional[str]:
    match = QUANTIZATION_PATTERN.search(stem.replace(".", "-"))
    return match.group(1).upper() if match else None


def _infer_parameter_count(stem: str) -> Optional[str]:
    match = PARAMETER_PATTERN.search(stem.replace("_", "-"))
    return f"{match.group(1)}B" if match else None


def describe_model_file(path: Path) -> ModelDescriptor:
    """Build a descriptor from the catalog or, failing that, the file name"""

    size_bytes = path.stat().st_size
    known = CATALOG.get(path.name)
    if known:
        return ModelDescriptor(path=str(path.resolve()), size_bytes=size_bytes, **known)

    stem = path.name[: -len(MODEL_FILE_SUFFIX)] if path.name.lower().endswith(MODEL_FILE_SUFFIX) else path.stem
    return ModelDescriptor(
        name=stem,
        path=str(path.resolve()),
        quantization=_infer_quantization(stem),
        parameter_count=_infer_parameter_count(stem),
        size_bytes=size_bytes
    )


def format_size(size_bytes: int) -> str:
    """Human readable byte count"""

    if size_bytes >= 1024 ** 3:
        return f"{size_bytes / 1024 ** 3:.1f} GB"
    if size_bytes >= 1024 ** 2:
        return f"{size_bytes / 1024 ** 2:.1f} MB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes} B"
