# qna_search/settings.py
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # core
    APP_NAME: str = Field(default="QnA Search")
    ENV: str = Field(default=os.getenv("APP_ENV", "dev"))
    DEBUG: bool = Field(default=True)
    LOG_LEVEL: str = Field(default="INFO")

    # local layout: {DATA_ROOT}/staging, processed, index
    DATA_ROOT: Path = Field(default=Path("data"))
    DEFAULT_GROUP: str = Field(default="defaultIndex")
    STAGING_EXTENSION: str = Field(default="json")
    ANSWERS_PATH: Optional[Path] = None

    # index
    EMBED_DIM: int = Field(default=512, gt=0)
    INDEX_CAPACITY: int = Field(default=100_000, gt=0)
    ID_SCHEME: Literal["direct", "composite"] = "direct"
    DEFAULT_NEIGHBORS: int = Field(default=1, gt=0)

    # embeddings
    EMBED_BACKEND: Literal["echo", "sentence-transformers", "ollama"] = "echo"
    EMBED_MODEL_NAME: str = Field(default="sentence-transformers/distiluse-base-multilingual-cased-v2")
    EMBED_DEVICE: str = Field(default="cpu")
    OLLAMA_HOST: str = Field(default="http://localhost:11434")
    EMBED_BATCH_SIZE: int = Field(default=128, gt=0)

    # remote durability
    OBJECT_STORE: Literal["local", "s3"] = "local"
    REMOTE_ROOT: Path = Field(default=Path("remote"))
    BUCKET: str = Field(default="qna-persistent-vectorstorage")
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: Optional[str] = None
    SYNC_FAILURE_POLICY: Literal["collect", "strict"] = "collect"
    SYNC_ON_STARTUP: bool = Field(default=True)

    # external call policy
    RETRY_ATTEMPTS: int = Field(default=5, ge=1)
    TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env.dev",
        extra="ignore",
    )

    @property
    def app_name(self) -> str:
        return self.APP_NAME

    @property
    def staging_dir(self) -> Path:
        return self.DATA_ROOT / "staging"

    @property
    def processed_dir(self) -> Path:
        return self.DATA_ROOT / "processed"

    @property
    def index_dir(self) -> Path:
        return self.DATA_ROOT / "index"


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(level.upper())


settings = Settings()
