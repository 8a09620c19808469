import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    data_dir: str = "data"
    host: str = "127.0.0.1"
    port: int = 5000
    cors_origin: str = "*"
    admin_name: str = "Admin"
    admin_email: str = "admin@company.com"
    log_level: str = "INFO"

    @staticmethod
    def from_env(dotenv_path: str | None = None) -> "Settings":
        load_dotenv(dotenv_path)
        return Settings(
            data_dir=os.environ.get("ROOM_BOOKING_DATA_DIR") or "data",
            host=os.environ.get("ROOM_BOOKING_HOST") or "127.0.0.1",
            port=int(os.environ.get("ROOM_BOOKING_PORT") or 5000),
            cors_origin=os.environ.get("ROOM_BOOKING_CORS_ORIGIN") or "*",
            admin_name=os.environ.get("ROOM_BOOKING_ADMIN_NAME") or "Admin",
            admin_email=os.environ.get("ROOM_BOOKING_ADMIN_EMAIL") or "admin@company.com",
            log_level=(os.environ.get("ROOM_BOOKING_LOG_LEVEL") or "INFO").upper(),
        )
