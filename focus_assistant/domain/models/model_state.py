from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class ModelState(str, Enum):
    """Lifecycle of the single native model session"""
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    UNLOADING = "unloading"


class ModelDescriptor(BaseModel):
    """An installed model file that can be loaded"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Display name")
    path: str = Field(description="Absolute path to the GGUF file")
    quantization: Optional[str] = Field(None, description="Quantization tag, e.g. Q4_K_M")
    parameter_count: Optional[str] = Field(None, description="Parameter count, e.g. 1.1B")
    size_bytes: int = Field(0, ge=0)
    description: str = Field("", description="Catalog description")

    @property
    def file_name(self) -> str:
        return self.path.replace("\\", "/").rsplit("/", 1)[-1]

    def matches(self, name: str) -> bool:
        """Match by display name, file name or file stem"""
        candidate = name.strip().lower()
        stem = self.file_name.rsplit(".", 1)[0].lower()
        return candidate in (self.name.lower(), self.file_name.lower(), stem)


class ModelStatus(BaseModel):
    """Snapshot of the manager for status endpoints"""
    state: ModelState
    current: Optional[ModelDescriptor] = None
    session_id: Optional[str] = None
    load_count: int = 0
