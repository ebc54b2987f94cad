import logging
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

ROOT_DIR = Path(__file__).resolve().parent.parent.parent

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

class Settings(BaseModel):
    """Runtime configuration, read from the environment (and ``.env``)."""

    db_path: str = "collegestar.db"
    upload_dir: str = "uploads"
    website_dir: str = str(ROOT_DIR / "website")
    cors_origins: List[str] = ["*"]
    max_upload_mb: int = 20
    upi_payee: str = "namitabag@naviaxis"
    upi_payee_name: str = "CollegeStar"
    upi_note: str = "Support CollegeStar - Buy us a coffee"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls, env_file: Path = ROOT_DIR / ".env") -> "Settings":
        load_dotenv(env_file)
        defaults = cls()
        return cls(
            db_path=os.environ.get("COLLEGESTAR_DB_PATH", defaults.db_path),
            upload_dir=os.environ.get("COLLEGESTAR_UPLOAD_DIR", defaults.upload_dir),
            website_dir=os.environ.get("COLLEGESTAR_WEBSITE_DIR", defaults.website_dir),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            max_upload_mb=int(os.environ.get("MAX_UPLOAD_MB", defaults.max_upload_mb)),
            upi_payee=os.environ.get("UPI_PAYEE", defaults.upi_payee),
            upi_payee_name=os.environ.get("UPI_PAYEE_NAME", defaults.upi_payee_name),
            upi_note=os.environ.get("UPI_NOTE", defaults.upi_note),
            log_level=os.environ.get("LOG_LEVEL", defaults.log_level).upper(),
            host=os.environ.get("HOST", defaults.host),
            port=int(os.environ.get("PORT", defaults.port)),
        )

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
