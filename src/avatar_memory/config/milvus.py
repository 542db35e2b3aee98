import os

from .loader import section


class Milvus:
    def __init__(self, config: dict | None = None) -> None:
        milvus_cfg = section(config, "milvus")
        self.MILVUS_HOST: str = str(milvus_cfg.get("host", os.getenv("MILVUS_HOST", "127.0.0.1")))
        self.MILVUS_PORT: str = str(milvus_cfg.get("port", os.getenv("MILVUS_PORT", "19530")))
        self.MILVUS_TOKEN: str = str(milvus_cfg.get("token", os.getenv("MILVUS_TOKEN", "")))
        self.MILVUS_INDEX_TYPE: str = str(milvus_cfg.get("index_type", os.getenv("MILVUS_INDEX_TYPE", "IVF_FLAT")))
        self.MILVUS_NLIST: int = int(milvus_cfg.get("nlist", os.getenv("MILVUS_NLIST", "128")))
        self.MILVUS_NPROBE: int = int(milvus_cfg.get("nprobe", os.getenv("MILVUS_NPROBE", "16")))
        self.MILVUS_QUERY_CHUNK: int = int(milvus_cfg.get("query_chunk", os.getenv("MILVUS_QUERY_CHUNK", "500")))
        # Either a server URL or a local Milvus Lite file such as data/memory.db
        uri = str(milvus_cfg.get("uri", os.getenv("MILVUS_URI", "")) or "")
        self.MILVUS_URI: str = uri or f"http://{self.MILVUS_HOST}:{self.MILVUS_PORT}"
