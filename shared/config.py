import os
from typing import List
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


def _csv_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    app_env: str = Field(default=os.getenv("APP_ENV", "dev"))
    data_dir: str = Field(default=os.getenv("DATA_DIR", "./storage_data"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    # Object storage (attachments)
    object_store_dir: str = Field(default=os.getenv("OBJECT_STORE_DIR", "./storage_data/objects"))
    object_base_url: str = Field(default=os.getenv("OBJECT_BASE_URL", "http://127.0.0.1:8000/files"))
    delete_concurrency: int = Field(default=int(os.getenv("DELETE_CONCURRENCY", "4")))
    max_upload_bytes: int = Field(default=int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024))))
    allowed_upload_extensions: List[str] = Field(
        default=_csv_env("ALLOWED_UPLOAD_EXTENSIONS", ".pdf,.jpg,.jpeg,.png,.docx,.txt")
    )

    # Edit sessions / orphan sweeps
    session_idle_seconds: int = Field(default=int(os.getenv("SESSION_IDLE_SECONDS", "3600")))
    orphan_grace_seconds: int = Field(default=int(os.getenv("ORPHAN_GRACE_SECONDS", "86400")))

    # LangSmith
    langsmith_api_key: str = Field(default=os.getenv("LANGSMITH_API_KEY", ""))
    langsmith_project: str = Field(default=os.getenv("LANGSMITH_PROJECT", "clinic-records"))
    langsmith_tracing: bool = Field(default=os.getenv("LANGSMITH_TRACING", "0") == "1")

settings = Settings()
os.makedirs(settings.data_dir, exist_ok=True)
