"""
Inference engine adapter.

The native engine is reached only through two narrow contracts:
``InferenceEngine.load`` returns an ``EngineSession`` that streams text
fragments and must be closed explicitly. All calls are blocking and are
expected to run on the model manager's worker thread.
"""

from typing import Iterator, List, Optional, Protocol
import structlog

logger = structlog.get_logger(__name__)


class EngineSession(Protocol):
    """A loaded native model context"""

    def stream(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        top_p: float,
        stop: List[str]
    ) -> Iterator[str]:
        ...

    def close(self) -> None:
        ...


class InferenceEngine(Protocol):
    """Loads model files into native sessions"""

    def load(self, model_path: str) -> EngineSession:
        ...


class LlamaCppSession:
    """Session backed by a ``llama_cpp.Llama`` instance"""

    def __init__(self, llm, model_path: str):
        self._llm = llm
        self.model_path = model_path

    def stream(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        top_p: float,
        stop: List[str]
    ) -> Iterator[str]:
        """Yield generated text chunk by chunk"""

        if self._llm is None:
            raise RuntimeError("Session is closed")

        chunks = self._llm(
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            stop=list(dict.fromkeys(stop)),
            echo=False,
            stream=True
        )
        for chunk in chunks:
            choices = chunk.get("choices") or []
            if not choices:
                continue
            text = choices[0].get("text") or ""
            if text:
                yield text

    def close(self) -> None:
        """Free the native context"""

        if self._llm is None:
            return
        close = getattr(self._llm, "close", None)
        if callable(close):
            close()
        self._llm = None
        logger.debug("Native context freed", model_path=self.model_path)


class LlamaCppEngine:
    """Loads GGUF files with llama-cpp-python"""

    def __init__(self, context_size: int = 2048, threads: Optional[int] = None, gpu_layers: int = 0):
        self.context_size = context_size
        self.threads = threads
        self.gpu_layers = gpu_layers

    def load(self, model_path: str) -> LlamaCppSession:
        """Create a native context for the model file"""

        try:
            from llama_cpp import Llama
        except ImportError as e:
            raise RuntimeError(
                "llama-cpp-python is not installed; install focus-assistant[llama]"
            ) from e

        logger.info(
            "Loading model into llama.cpp",
            model_path=model_path,
            context_size=self.context_size,
            threads=self.threads,
            gpu_layers=self.gpu_layers
        )
        llm = Llama(
            model_path=model_path,
            n_ctx=int(self.context_size),
            n_threads=self.threads,
            n_gpu_layers=int(self.gpu_layers),
            verbose=False
        )
        return LlamaCppSession(llm, model_path)
