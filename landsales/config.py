from dotenv import load_dotenv
from functools import lru_cache
from pathlib import Path
import os
import logging

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Settings:
    """Engine settings read from the environment (.env supported)"""

    def __init__(self):
        self.mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
        self.db_name = os.environ.get('DB_NAME', 'landsales')
        self.log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()

        # Write-conflict retry policy
        self.conflict_max_retries = int(os.environ.get('CONFLICT_MAX_RETRIES', '3'))
        self.conflict_retry_delay_ms = int(os.environ.get('CONFLICT_RETRY_DELAY_MS', '50'))

        # Sweep jobs
        self.sweep_batch_size = int(os.environ.get('SWEEP_BATCH_SIZE', '100'))
        self.audit_retention_days = int(os.environ.get('AUDIT_RETENTION_DAYS', '730'))
        self.activity_retention_days = int(os.environ.get('ACTIVITY_RETENTION_DAYS', '365'))
        self.security_event_retention_days = int(os.environ.get('SECURITY_EVENT_RETENTION_DAYS', '365'))

    def __repr__(self):
        return f"Settings(db_name={self.db_name}, log_level={self.log_level})"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = None):
    """Configure root logging the same way for every entry point"""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, level or settings.log_level, logging.INFO),
        format=LOG_FORMAT
    )
