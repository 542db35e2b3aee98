import logging
import os

from .loader import section

logger = logging.getLogger(__name__)

_PROVIDERS = ("openai", "ollama")


class Embeddings:
    def __init__(self, config: dict | None = None) -> None:
        emb_cfg = section(config, "embeddings")
        key_env = str(emb_cfg.get("openai_key_env", "OPENAI_API_KEY"))

        self.EMB_PROVIDER: str = str(emb_cfg.get("provider", os.getenv("EMB_PROVIDER", "openai"))).lower()
        self.EMB_MODEL_ID: str = str(emb_cfg.get("model_id", os.getenv("EMB_MODEL_ID", "text-embedding-3-small")))
        # 0 means "ask the model"
        self.EMB_DIM: int = int(emb_cfg.get("dim", os.getenv("EMB_DIM", "0")))
        self.EMB_DEFAULT_DIM: int = int(emb_cfg.get("default_dim", os.getenv("EMB_DEFAULT_DIM", "384")))
        self.OLLAMA_URL: str = str(emb_cfg.get("ollama_url", os.getenv("OLLAMA_URL", "http://localhost:11434")))
        self.OPENAI_API_KEY: str | None = os.getenv(key_env)

        if self.EMB_PROVIDER not in _PROVIDERS:
            logger.warning(
                "Unknown embedding provider %r; falling back to 'openai'", self.EMB_PROVIDER
            )
            self.EMB_PROVIDER = "openai"
