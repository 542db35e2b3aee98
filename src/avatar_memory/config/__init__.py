"""Memory subsystem configuration"""

import logging
from dotenv import load_dotenv

from .loader import load_raw_config
from .memory import Memory
from .milvus import Milvus
from .embeddings import Embeddings

load_dotenv()

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(format=LOG_FORMAT, datefmt=DATE_FORMAT, level=logging.INFO)
logging.getLogger("httpx").setLevel(logging.WARNING)

_RAW_CONFIG = load_raw_config()

memory = Memory(_RAW_CONFIG)
milvus = Milvus(_RAW_CONFIG)
embeddings = Embeddings(_RAW_CONFIG)


class Config:
    memory = memory
    milvus = milvus
    embeddings = embeddings


__all__ = ["memory", "milvus", "embeddings", "Config"]
